from typing import Dict, Any, List, Optional, Union
from pydantic import BaseModel, Field

from vision_agent.domain.models.vision_state import (
    CommitResult, ContextLayer, GapResult, ResolutionStrategy
)


class CreateVisionRequest(BaseModel):
    """Create a vision record"""
    id: Optional[str] = Field(None, description="Caller-chosen record id; generated when omitted")
    title: Optional[str] = None
    business_state: Dict[str, Any] = Field(default_factory=dict)
    user_id: str = "system"


class CommitRequest(BaseModel):
    business_state: Dict[str, Any]
    expected_version: Optional[int] = Field(None, ge=1)
    user_id: str = "system"
    change_type: str = "manual_update"


class ExtractionRequest(BaseModel):
    """Raw extraction output to merge into the stored record"""
    fields: Dict[str, Any] = Field(default_factory=dict, description="Field name -> ExtractedField payload")
    custom_fields: Dict[str, Any] = Field(default_factory=dict)
    context: List[str] = Field(default_factory=list, description="Recent conversation, oldest first")
    expected_version: Optional[int] = Field(None, ge=1)
    user_id: str = "system"


class ExtractionResponse(BaseModel):
    commit: Optional[CommitResult] = None
    gap_analysis: GapResult
    rejected: Dict[str, str] = Field(default_factory=dict)
    changed: bool


class ResolveRequest(BaseModel):
    client_changes: Dict[str, Any]
    strategy: ResolutionStrategy = ResolutionStrategy.MERGE


class GapRequest(BaseModel):
    context: List[str] = Field(default_factory=list)
    business_state: Optional[Dict[str, Any]] = Field(None, description="Score this snapshot instead of the stored one")


class ContextOptimizeRequest(BaseModel):
    layers: List[ContextLayer]
    budget: int = Field(ge=0)


class ContextOptimizeResponse(BaseModel):
    content: str
    sources: List[str]
    token_count: int
    layer_tokens: Dict[str, int]
    applied_strategies: List[str]
    distribution: Dict[str, Any]
    summary: str


class TurnRequest(BaseModel):
    """One user chat message for the turn workflow"""
    message: str = Field(min_length=1)
    session_id: str
    user_id: str = "system"


class TurnResponse(BaseModel):
    reply: str
    extraction_status: str = Field(description="'ok', a degraded reason, or 'skipped'")
    commit: Optional[CommitResult] = None
    gap_analysis: Optional[GapResult] = None


class ContextBuildRequest(BaseModel):
    """Assemble the layered context for a session against a stored record"""
    session_id: str
    user_id: Optional[str] = None
    budget: Optional[int] = Field(None, ge=0, description="Defaults to the configured context budget")
    rag_snippets: List[Union[str, Dict[str, Any]]] = Field(default_factory=list)
