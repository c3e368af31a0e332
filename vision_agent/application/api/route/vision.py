from typing import Annotated, List
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
import structlog

from vision_agent.application.api.schema import (
    CommitRequest, ContextBuildRequest, ContextOptimizeRequest, ContextOptimizeResponse, CreateVisionRequest,
    ExtractionRequest, ExtractionResponse, GapRequest, ResolveRequest, TurnRequest, TurnResponse
)
from vision_agent.application.container import VisionServices
from vision_agent.domain.models.vision_state import (
    AuditEntry, CommitResult, ExtractionOk, GapResult, OptimizationResult, VisionRecord
)
from vision_agent.domain.persistence.errors import (
    DuplicateRecordError, RecordNotFoundError, VisionStoreError
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1")


def get_services(request: Request) -> VisionServices:
    return request.app.state.services


Services = Annotated[VisionServices, Depends(get_services)]


def commit_response(result: CommitResult) -> JSONResponse:
    """Map a commit outcome onto an HTTP status"""

    if result.status == "ok":
        status_code = 200
    elif result.status == "conflict":
        status_code = 409
    elif result.error.kind == "not_found":
        status_code = 404
    else:
        status_code = 503
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


async def load_record(services: VisionServices, record_id: str) -> VisionRecord:
    try:
        return await services.gateway.get_record(record_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail=f"Vision {record_id} not found")
    except VisionStoreError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.post("/visions", response_model=VisionRecord, status_code=201)
async def create_vision(request: CreateVisionRequest, services: Services):
    try:
        return await services.gateway.create_record(
            title=request.title,
            initial_state=request.business_state,
            user_id=request.user_id,
            record_id=request.id
        )
    except DuplicateRecordError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except VisionStoreError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/visions/{record_id}", response_model=VisionRecord)
async def get_vision(record_id: str, services: Services):
    return await load_record(services, record_id)


@router.post("/visions/{record_id}/commit", response_model=CommitResult)
async def commit_vision(record_id: str, request: CommitRequest, services: Services):
    result = await services.gateway.commit(
        record_id,
        request.business_state,
        expected_version=request.expected_version,
        user_id=request.user_id,
        change_type=request.change_type
    )
    return commit_response(result)


@router.post("/visions/{record_id}/extractions", response_model=ExtractionResponse)
async def apply_extraction(record_id: str, request: ExtractionRequest, services: Services):
    """Merge an extraction batch into the record, score it and commit when it changed"""

    record = await load_record(services, record_id)
    outcome = services.parser.from_mapping({
        **request.fields,
        "metadata": {"custom_fields": request.custom_fields}
    })

    merged = services.merge_engine.merge(record.business_state, outcome.fields, outcome.custom_fields)
    gap = services.scorer.score(merged, request.context)
    if merged != record.business_state:
        metadata = dict(merged.get("metadata") or {})
        metadata["focus_stage"] = gap.suggested_focus.value
        merged["metadata"] = metadata

    changed = merged != record.business_state
    commit = None
    if changed:
        commit = await services.gateway.commit(
            record_id,
            merged,
            expected_version=request.expected_version or record.version,
            user_id=request.user_id,
            change_type="extraction_update"
        )

    response = ExtractionResponse(commit=commit, gap_analysis=gap, rejected=outcome.rejected, changed=changed)
    status_code = commit_response(commit).status_code if commit is not None else 200
    return JSONResponse(status_code=status_code, content=response.model_dump(mode="json"))


@router.post("/visions/{record_id}/resolve", response_model=CommitResult)
async def resolve_conflict(record_id: str, request: ResolveRequest, services: Services):
    result = await services.gateway.resolve_conflict(record_id, request.client_changes, request.strategy)
    return commit_response(result)


@router.post("/visions/{record_id}/gaps", response_model=GapResult)
async def analyze_gaps(record_id: str, request: GapRequest, services: Services):
    if request.business_state is not None:
        state = request.business_state
    else:
        state = (await load_record(services, record_id)).business_state
    return services.scorer.score(state, request.context)


@router.get("/visions/{record_id}/changes", response_model=List[AuditEntry])
async def list_changes(record_id: str, services: Services):
    try:
        return await services.gateway.list_changes(record_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail=f"Vision {record_id} not found")
    except VisionStoreError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.post("/visions/{record_id}/context", response_model=OptimizationResult)
async def build_context(record_id: str, request: ContextBuildRequest, services: Services):
    record = await load_record(services, record_id)
    budget = request.budget if request.budget is not None else services.settings.default_context_budget
    return await services.context_manager.build_context(
        request.session_id,
        budget,
        user_id=request.user_id,
        record=record,
        rag_snippets=request.rag_snippets
    )


@router.post("/context/optimize", response_model=ContextOptimizeResponse)
async def optimize_context(request: ContextOptimizeRequest, services: Services):
    try:
        result = services.optimizer.optimize(request.layers, request.budget)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return ContextOptimizeResponse(
        **result.model_dump(),
        distribution=services.optimizer.analyze_distribution(result),
        summary=services.optimizer.summarize(result)
    )


@router.post("/visions/{record_id}/turns", response_model=TurnResponse)
async def run_turn(record_id: str, request: TurnRequest, services: Services):
    """Run one chat turn: extract, merge, score, commit and pick the next question"""

    if services.turn_workflow is None:
        raise HTTPException(status_code=503, detail="No extraction model configured")

    state = await services.turn_workflow.run(record_id, request.session_id, request.user_id, request.message)
    if state.get("error"):
        await load_record(services, record_id)
        raise HTTPException(status_code=503, detail=state["error"])

    extraction = state.get("extraction")
    if extraction is None:
        extraction_status = "skipped"
    elif isinstance(extraction, ExtractionOk):
        extraction_status = "ok"
    else:
        extraction_status = extraction.reason

    commit = state.get("commit_result")
    response = TurnResponse(
        reply=state["messages"][-1].content,
        extraction_status=extraction_status,
        commit=commit,
        gap_analysis=state.get("gap_result")
    )
    status_code = commit_response(commit).status_code if commit is not None else 200
    return JSONResponse(status_code=status_code, content=response.model_dump(mode="json"))
