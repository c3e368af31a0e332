from typing import Dict, Any, Mapping, Optional, Tuple, Union
import json
import re
import structlog
from pydantic import ValidationError

from vision_agent.domain.models.vision_state import (
    ExtractedField, ExtractionDegraded, ExtractionMethod, ExtractionOk
)
from vision_agent.domain.vision.field_catalog import catalog_field_names

logger = structlog.get_logger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_METHODS = {method.value for method in ExtractionMethod}


class ExtractionParser:
    """Validates raw extraction model output into scored fields"""

    def __init__(self, standard_fields: Optional[Tuple[str, ...]] = None, min_confidence: float = 0.5):
        self.standard_fields = frozenset(standard_fields or catalog_field_names())
        self.min_confidence = min_confidence

    def parse(self, content: str) -> Union[ExtractionOk, ExtractionDegraded]:
        """Parse model text; anything that is not a JSON object degrades"""

        match = _JSON_OBJECT.search(content or "")
        if not match:
            logger.warning("Extraction output has no JSON object", length=len(content or ""))
            return ExtractionDegraded(reason="no_json", detail="No JSON object found in model output")

        try:
            payload = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            logger.warning("Extraction output is not valid JSON", error=str(e))
            return ExtractionDegraded(reason="invalid_json", detail=str(e))

        if not isinstance(payload, dict):
            return ExtractionDegraded(reason="not_an_object", detail=type(payload).__name__)

        return self.from_mapping(payload)

    def from_mapping(self, payload: Mapping[str, Any]) -> ExtractionOk:
        fields: Dict[str, ExtractedField] = {}
        custom_fields: Dict[str, ExtractedField] = {}
        rejected: Dict[str, str] = {}

        for name, raw in payload.items():
            if name == "metadata":
                continue
            target = fields if name in self.standard_fields else custom_fields
            self._admit(name, raw, target, rejected)

        metadata = payload.get("metadata")
        if isinstance(metadata, dict) and isinstance(metadata.get("custom_fields"), dict):
            for name, raw in metadata["custom_fields"].items():
                self._admit(name, raw, custom_fields, rejected)

        confidences = [f.confidence for f in fields.values()]
        total_confidence = sum(confidences) / len(confidences) if confidences else 0.0

        if rejected:
            logger.debug("Rejected extracted fields", rejected=rejected)

        return ExtractionOk(
            fields=fields,
            custom_fields=custom_fields,
            rejected=rejected,
            total_confidence=round(total_confidence, 4),
        )

    def _admit(
        self,
        name: str,
        raw: Any,
        target: Dict[str, ExtractedField],
        rejected: Dict[str, str]
    ) -> None:
        if not isinstance(raw, dict):
            rejected[name] = "not an object"
            return

        data = dict(raw)
        if data.get("extraction_method") not in _METHODS:
            data.pop("extraction_method", None)

        try:
            extracted = ExtractedField.model_validate(data)
        except ValidationError as e:
            rejected[name] = e.errors()[0]["msg"]
            return

        if extracted.value is None:
            rejected[name] = "null value"
        elif extracted.confidence < self.min_confidence:
            rejected[name] = "low confidence"
        else:
            target[name] = extracted
