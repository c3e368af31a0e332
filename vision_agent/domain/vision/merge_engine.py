from typing import Dict, Any, List, Mapping, Optional, Union
import copy
import structlog
from pydantic import ValidationError

from vision_agent.domain.models.vision_state import ExtractedField
from vision_agent.domain.vision.field_catalog import LIST_FIELDS

logger = structlog.get_logger(__name__)

RESERVED_KEYS = frozenset({"metadata", "custom_fields"})
CUSTOM_FIELDS_KEY = "custom_fields"

ExtractionBatch = Mapping[str, Union[ExtractedField, Mapping[str, Any]]]


def normalize(value: Any) -> Any:
    """Comparison key: strings compare trimmed and case-insensitively"""
    if isinstance(value, str):
        return value.strip().lower()
    return value


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def union_append(current: List[Any], incoming: List[Any]) -> List[Any]:
    """Append incoming items not already present, keeping existing order"""
    combined = list(current)
    seen = {normalize(item) for item in combined if _hashable(normalize(item))}
    for item in incoming:
        key = normalize(item)
        if _hashable(key):
            if key in seen:
                continue
            seen.add(key)
        elif any(normalize(existing) == key for existing in combined):
            continue
        combined.append(item)
    return combined


def _hashable(value: Any) -> bool:
    try:
        hash(value)
    except TypeError:
        return False
    return True


class MergeEngine:
    """Folds confidence-scored extractions into a vision state"""

    def __init__(
        self,
        admit_threshold: float = 0.5,
        update_threshold: float = 0.7,
        overwrite_threshold: float = 0.9,
        list_fields: Optional[frozenset] = None
    ):
        self.admit_threshold = admit_threshold
        self.update_threshold = update_threshold
        self.overwrite_threshold = overwrite_threshold
        self.list_fields = LIST_FIELDS if list_fields is None else list_fields

    def merge(
        self,
        current: Mapping[str, Any],
        extracted: ExtractionBatch,
        custom: Optional[ExtractionBatch] = None
    ) -> Dict[str, Any]:
        """Return a new state with the extraction batch applied"""

        merged = copy.deepcopy(dict(current or {}))
        applied: List[str] = []

        for field, raw in (extracted or {}).items():
            if field in RESERVED_KEYS:
                logger.debug("Skipping reserved key in extraction", field=field)
                continue
            if self._apply(merged, field, raw, as_list=field in self.list_fields):
                applied.append(field)

        if custom:
            custom_map = merged.get(CUSTOM_FIELDS_KEY)
            custom_map = dict(custom_map) if isinstance(custom_map, dict) else {}
            for field, raw in custom.items():
                if self._apply(custom_map, field, raw):
                    applied.append(f"{CUSTOM_FIELDS_KEY}.{field}")
            if custom_map:
                merged[CUSTOM_FIELDS_KEY] = custom_map

        if applied:
            logger.debug("Merged extraction batch", applied=applied)

        return merged

    def _apply(self, target: Dict[str, Any], field: str, raw: Any, as_list: bool = False) -> bool:
        extraction = self._coerce(field, raw)
        if extraction is None:
            return False

        new_value = extraction.value
        if new_value is None or extraction.confidence < self.admit_threshold:
            return False
        if as_list and not isinstance(new_value, list):
            new_value = [new_value]

        current_value = target.get(field)
        resolved = self._resolve(current_value, copy.deepcopy(new_value), extraction.confidence)
        if resolved is _UNCHANGED:
            return False

        target[field] = resolved
        return True

    def _coerce(self, field: str, raw: Any) -> Optional[ExtractedField]:
        if isinstance(raw, ExtractedField):
            return raw
        if not isinstance(raw, Mapping):
            logger.debug("Dropping malformed extraction", field=field, reason="not a mapping")
            return None
        try:
            return ExtractedField.model_validate(raw)
        except ValidationError as e:
            logger.debug("Dropping malformed extraction", field=field, reason=str(e.errors()[0]["msg"]))
            return None

    def _resolve(self, current_value: Any, new_value: Any, confidence: float) -> Any:
        if is_empty(current_value):
            if is_empty(new_value):
                return _UNCHANGED
            return new_value

        if confidence < self.update_threshold:
            return _UNCHANGED

        if isinstance(current_value, list):
            incoming = new_value if isinstance(new_value, list) else [new_value]
            if confidence >= self.overwrite_threshold:
                return _UNCHANGED if incoming == current_value else incoming
            combined = union_append(current_value, incoming)
            return _UNCHANGED if len(combined) == len(current_value) else combined

        if confidence >= self.overwrite_threshold:
            return _UNCHANGED if new_value == current_value else new_value

        if normalize(new_value) == normalize(current_value):
            return _UNCHANGED
        return new_value

    def merge_states(self, server: Mapping[str, Any], client: Mapping[str, Any]) -> Dict[str, Any]:
        """Non-destructive field-wise merge of client changes over server state"""

        merged = copy.deepcopy(dict(server or {}))

        for key, value in (client or {}).items():
            if value is None:
                continue
            server_value = merged.get(key)

            if isinstance(value, list):
                if isinstance(server_value, list):
                    merged[key] = union_append(server_value, copy.deepcopy(value))
                elif value:
                    merged[key] = copy.deepcopy(value)
            elif isinstance(value, dict):
                if isinstance(server_value, dict):
                    merged[key] = self.merge_states(server_value, value)
                elif value:
                    merged[key] = copy.deepcopy(value)
            elif isinstance(value, str):
                if value.strip():
                    merged[key] = value
            elif isinstance(value, (int, float)):
                merged[key] = value

        return merged


class _Unchanged:
    def __repr__(self) -> str:
        return "<unchanged>"


_UNCHANGED = _Unchanged()
