from typing import TypedDict, Annotated, List, Dict, Any, Optional, Union
from langgraph.graph import StateGraph, END
from langgraph.graph.message import add_messages
from langchain_core.messages import BaseMessage, HumanMessage, AIMessage
import copy
import structlog

from vision_agent.domain.models.vision_state import (
    CommitResult, ExtractionDegraded, ExtractionOk, GapResult, VisionRecord
)
from vision_agent.domain.context.memory.runtime_memory import RuntimeMemory
from vision_agent.domain.persistence.errors import VisionStoreError
from vision_agent.domain.persistence.gateway import PersistenceGateway
from vision_agent.domain.vision.gap_scorer import GapScorer
from vision_agent.domain.vision.merge_engine import MergeEngine
from vision_agent.infrastructure.observability.logging import VisionLogger, vision_logger
from .extractor import InformationExtractor

logger = structlog.get_logger(__name__)

COMPLETE_MESSAGE = "Your vision covers every area we track. Is there anything you would like to refine?"


class VisionTurnState(TypedDict):
    """State for the per-turn workflow graph"""
    messages: Annotated[List[BaseMessage], add_messages]
    record_id: str
    session_id: str
    user_id: str
    record: Optional[VisionRecord]
    extraction: Optional[Union[ExtractionOk, ExtractionDegraded]]
    merged_state: Optional[Dict[str, Any]]
    gap_result: Optional[GapResult]
    commit_result: Optional[CommitResult]
    error: Optional[str]


class VisionTurnWorkflow:
    """One chat turn: load -> extract -> merge -> score -> commit -> respond"""

    def __init__(
        self,
        gateway: PersistenceGateway,
        merge_engine: MergeEngine,
        scorer: GapScorer,
        extractor: InformationExtractor,
        runtime_memory: RuntimeMemory,
        event_logger: Optional[VisionLogger] = None,
        context_window: int = 3
    ):
        self.gateway = gateway
        self.merge_engine = merge_engine
        self.scorer = scorer
        self.extractor = extractor
        self.runtime_memory = runtime_memory
        self.events = event_logger or vision_logger
        self.context_window = context_window
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Create the turn workflow graph"""

        workflow = StateGraph(VisionTurnState)

        workflow.add_node("load_record", self.load_record_node)
        workflow.add_node("extract", self.extract_node)
        workflow.add_node("merge", self.merge_node)
        workflow.add_node("score", self.score_node)
        workflow.add_node("commit", self.commit_node)
        workflow.add_node("respond", self.respond_node)

        workflow.set_entry_point("load_record")

        workflow.add_conditional_edges(
            "load_record",
            self.route_after_load,
            {
                "extract": "extract",
                "error": END
            }
        )

        # Degraded extraction skips the merge and never writes
        workflow.add_conditional_edges(
            "extract",
            self.route_after_extract,
            {
                "merge": "merge",
                "score": "score"
            }
        )
        workflow.add_edge("merge", "score")

        workflow.add_conditional_edges(
            "score",
            self.route_after_score,
            {
                "commit": "commit",
                "respond": "respond"
            }
        )
        workflow.add_edge("commit", "respond")
        workflow.add_edge("respond", END)

        return workflow.compile()

    async def run(self, record_id: str, session_id: str, user_id: str, message: str) -> Dict[str, Any]:
        """Process one user message against a record"""

        structlog.contextvars.bind_contextvars(session_id=session_id, record_id=record_id)
        try:
            return await self.workflow.ainvoke({
                "messages": [HumanMessage(content=message)],
                "record_id": record_id,
                "session_id": session_id,
                "user_id": user_id,
                "record": None,
                "extraction": None,
                "merged_state": None,
                "gap_result": None,
                "commit_result": None,
                "error": None,
            })
        finally:
            structlog.contextvars.unbind_contextvars("session_id", "record_id")

    async def load_record_node(self, state: VisionTurnState) -> Dict[str, Any]:
        try:
            record = await self.gateway.get_record(state["record_id"])
        except VisionStoreError as e:
            logger.error("Failed to load vision record", record_id=state["record_id"], error=str(e))
            return {"error": str(e)}
        return {"record": record}

    async def extract_node(self, state: VisionTurnState) -> Dict[str, Any]:
        """Run the extraction model on the latest user message"""

        message = state["messages"][-1].content
        session_context = await self.runtime_memory.recent_messages(state["session_id"], self.context_window)
        await self.runtime_memory.add_turn(state["session_id"], "user", message)

        extraction = await self.extractor.extract(message, state["record"].business_state, session_context)
        if isinstance(extraction, ExtractionDegraded):
            logger.warning("Extraction degraded", reason=extraction.reason, detail=extraction.detail)
        return {"extraction": extraction}

    async def merge_node(self, state: VisionTurnState) -> Dict[str, Any]:
        extraction = state["extraction"]
        current = state["record"].business_state
        merged = self.merge_engine.merge(current, extraction.fields, extraction.custom_fields)

        applied = sorted(k for k in merged if merged.get(k) != current.get(k))
        self.events.log_merge_applied(state["record_id"], applied, extraction.rejected)
        return {"merged_state": merged}

    async def score_node(self, state: VisionTurnState) -> Dict[str, Any]:
        """Score the merged state, or the stored one when nothing was merged"""

        base = state["merged_state"] if state["merged_state"] is not None else state["record"].business_state
        context = await self.runtime_memory.recent_messages(state["session_id"], self.context_window)
        gap_result = self.scorer.score(base, context)

        update: Dict[str, Any] = {"gap_result": gap_result}
        if state["merged_state"] is not None and state["merged_state"] != state["record"].business_state:
            merged = copy.deepcopy(state["merged_state"])
            metadata = merged.get("metadata") if isinstance(merged.get("metadata"), dict) else {}
            metadata["focus_stage"] = gap_result.suggested_focus.value
            merged["metadata"] = metadata
            update["merged_state"] = merged
        return update

    async def commit_node(self, state: VisionTurnState) -> Dict[str, Any]:
        result = await self.gateway.commit(
            state["record_id"],
            state["merged_state"],
            expected_version=state["record"].version,
            user_id=state["user_id"],
            change_type="extraction_update"
        )
        if result.status != "ok":
            logger.warning("Turn commit not applied", status=result.status)
        return {"commit_result": result}

    async def respond_node(self, state: VisionTurnState) -> Dict[str, Any]:
        """Append the selected next question as the assistant message"""

        next_question = state["gap_result"].next_question
        content = next_question.question if next_question else COMPLETE_MESSAGE
        await self.runtime_memory.add_turn(state["session_id"], "assistant", content)
        return {"messages": [AIMessage(content=content)]}

    def route_after_load(self, state: VisionTurnState) -> str:
        return "error" if state.get("error") else "extract"

    def route_after_extract(self, state: VisionTurnState) -> str:
        return "merge" if isinstance(state["extraction"], ExtractionOk) else "score"

    def route_after_score(self, state: VisionTurnState) -> str:
        merged = state.get("merged_state")
        if merged is None or merged == state["record"].business_state:
            return "respond"
        return "commit"
