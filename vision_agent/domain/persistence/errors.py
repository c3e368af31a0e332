class VisionStoreError(Exception):
    """Base class for record store failures"""

    def __init__(self, message: str, record_id: str = None):
        super().__init__(message)
        self.record_id = record_id


class RecordNotFoundError(VisionStoreError):
    """No record exists under the requested id"""


class StoreUnavailableError(VisionStoreError):
    """The backing store could not be reached or locked"""


class DuplicateRecordError(VisionStoreError):
    """A record with the same id already exists"""
