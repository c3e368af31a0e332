from typing import Dict, Any, List, Optional, Literal, Union, Annotated
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from datetime import datetime, timezone
from enum import Enum
import math


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def skipped_field_names(metadata: Any) -> List[str]:
    """Field names listed under metadata.skipped_fields; a bare string counts as one field"""
    if not isinstance(metadata, dict):
        return []
    value = metadata.get("skipped_fields")
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple, set)):
        return [item for item in value if isinstance(item, str)]
    return []


class ExtractionMethod(str, Enum):
    """How the extraction model arrived at a value"""
    DIRECT = "direct"
    INFERRED = "inferred"
    CONTEXTUAL = "contextual"


class FieldCategory(str, Enum):
    """Field catalog categories"""
    CRITICAL = "critical"
    IMPORTANT = "important"
    ENHANCEMENT = "enhancement"
    METRIC = "metric"


class QuestionPriority(str, Enum):
    """Question priority levels"""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 1, "medium": 2, "low": 3}[self.value]


class FollowUpType(str, Enum):
    CLARIFICATION = "clarification"
    EXPANSION = "expansion"
    VALIDATION = "validation"


class FocusStage(str, Enum):
    """Conversation stages, in the order they are worked through"""
    BASIC_INFO = "basic_info"
    STRATEGY = "strategy"
    METRICS = "metrics"
    IMPLEMENTATION = "implementation"


class LayerType(str, Enum):
    """Context layers, declared in assembly priority order"""
    CRITICAL = "critical"
    RECENT = "recent"
    USER_MEMORY = "user_memory"
    RAG = "rag"


class ResolutionStrategy(str, Enum):
    CLIENT_WINS = "client_wins"
    SERVER_WINS = "server_wins"
    MERGE = "merge"


class ExtractedField(BaseModel):
    """A single confidence-scored value produced by the extraction model"""
    model_config = ConfigDict(frozen=True)

    value: Any = Field(description="Extracted value; None means nothing usable was found")
    confidence: float = Field(description="Extraction certainty in [0, 1]")
    source_span: str = Field(default="", description="Text span the value was taken from")
    extraction_method: ExtractionMethod = Field(default=ExtractionMethod.INFERRED)

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, value: Any) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("confidence must be a number")
        if math.isnan(value):
            raise ValueError("confidence must not be NaN")
        return min(1.0, max(0.0, float(value)))

    @field_validator("source_span", mode="before")
    @classmethod
    def default_source_span(cls, value: Any) -> str:
        return "" if value is None else str(value)


class FieldCatalogEntry(BaseModel):
    """Static weighting and question template for one vision field"""
    model_config = ConfigDict(frozen=True)

    field_name: str
    weight: float = Field(gt=0)
    category: FieldCategory
    label: str = ""
    question: Optional[str] = Field(None, description="Templated follow-up question for gaps")
    follow_up_type: FollowUpType = FollowUpType.EXPANSION


class VisionRecord(BaseModel):
    """Persisted vision document"""
    id: str = Field(description="Record identifier")
    title: str = Field(default="Untitled vision")
    version: int = Field(default=1, ge=1, description="Monotonic edit counter, bumped on every commit")
    business_state: Dict[str, Any] = Field(default_factory=dict)
    completeness_score: float = Field(default=0.0, ge=0, le=100, description="Derived by the gap scorer")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def skipped_fields(self) -> List[str]:
        return skipped_field_names(self.business_state.get("metadata"))

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of the record"""
        return {
            "id": self.id,
            "title": self.title,
            "version": self.version,
            "completeness_score": self.completeness_score,
            "fields": sorted(k for k in self.business_state if k != "metadata"),
            "updated_at": self.updated_at.isoformat()
        }


class Conflict(BaseModel):
    """Returned when a caller's assumed version is stale"""
    current_version: int
    expected_version: int
    current_state: Dict[str, Any]


class CommitSuccess(BaseModel):
    new_version: int
    completeness_score: float


class CommitError(BaseModel):
    kind: Literal["not_found", "unavailable", "write_failed"]
    message: str


class CommitResult(BaseModel):
    """Outcome of a compare-and-swap commit; exactly one branch is set"""
    record_id: str
    ok: Optional[CommitSuccess] = None
    conflict: Optional[Conflict] = None
    error: Optional[CommitError] = None

    @model_validator(mode="after")
    def exactly_one_branch(self) -> "CommitResult":
        branches = [b for b in (self.ok, self.conflict, self.error) if b is not None]
        if len(branches) != 1:
            raise ValueError("CommitResult needs exactly one of ok, conflict, error")
        return self

    @property
    def status(self) -> Literal["ok", "conflict", "error"]:
        if self.ok is not None:
            return "ok"
        if self.conflict is not None:
            return "conflict"
        return "error"


class AuditEntry(BaseModel):
    """Change-log row appended after a successful commit"""
    record_id: str
    user_id: str
    old_version: int
    new_version: int
    change_type: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class SmartQuestion(BaseModel):
    """Candidate follow-up question"""
    question: str
    target_fields: List[str]
    priority: QuestionPriority
    follow_up_type: FollowUpType
    context_trigger: Optional[str] = None
    industry_specific: bool = False


class GapResult(BaseModel):
    """Completeness and next-question analysis of a vision snapshot"""
    completeness_score: float = Field(ge=0, le=100)
    critical_gaps: List[str] = Field(default_factory=list)
    weak_fields: List[str] = Field(default_factory=list)
    enhancement_gaps: List[str] = Field(default_factory=list)
    field_scores: Dict[str, float] = Field(default_factory=dict)
    stage_scores: Dict[str, float] = Field(default_factory=dict)
    suggested_focus: FocusStage = FocusStage.BASIC_INFO
    next_question: Optional[SmartQuestion] = None
    candidate_questions: List[SmartQuestion] = Field(default_factory=list, exclude=True)
    recommendations: List[str] = Field(default_factory=list)


class ContextLayer(BaseModel):
    """One prioritized slice of conversational memory"""
    content: str = ""
    sources: List[str] = Field(default_factory=list)
    token_count: Optional[int] = Field(None, ge=0)
    priority: float = 0.5
    layer: LayerType

    @model_validator(mode="after")
    def estimate_missing_tokens(self) -> "ContextLayer":
        if self.token_count is None:
            self.token_count = math.ceil(len(self.content) / 4)
        return self


class OptimizationResult(BaseModel):
    """Bounded context blob assembled from the layers"""
    content: str
    sources: List[str] = Field(default_factory=list)
    token_count: int
    layer_tokens: Dict[str, int] = Field(default_factory=dict)
    applied_strategies: List[str] = Field(default_factory=list)


class ExtractionOk(BaseModel):
    kind: Literal["ok"] = "ok"
    fields: Dict[str, ExtractedField] = Field(default_factory=dict)
    custom_fields: Dict[str, ExtractedField] = Field(default_factory=dict)
    rejected: Dict[str, str] = Field(default_factory=dict, description="Field name -> reason it was dropped")
    total_confidence: float = 0.0


class ExtractionDegraded(BaseModel):
    kind: Literal["degraded"] = "degraded"
    reason: Literal["no_json", "invalid_json", "not_an_object", "model_error"]
    detail: str = ""


ExtractionOutcome = Annotated[Union[ExtractionOk, ExtractionDegraded], Field(discriminator="kind")]
