from typing import Optional
from uuid import uuid4
import time
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from vision_agent.application.api.route.vision import router as vision_router
from vision_agent.application.container import VisionServices, build_services
from vision_agent.infrastructure.config.settings import Settings, get_settings
from vision_agent.infrastructure.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


def create_app(settings: Optional[Settings] = None, services: Optional[VisionServices] = None) -> FastAPI:
    """Build the HTTP app; run with `uvicorn vision_agent.application.api.api_server:create_app --factory`"""

    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_format, settings.service_name)

    app = FastAPI(
        title="Vision Agent API",
        description="Vision state synthesis and context budgeting",
    )
    app.state.services = services or build_services(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        trace_id = request.headers.get("X-Trace-ID") or str(uuid4())
        structlog.contextvars.bind_contextvars(trace_id=trace_id)
        start_time = time.time()
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("trace_id")

        app.state.services.metrics.record_latency(
            "http_request", (time.time() - start_time) * 1000, tags={"path": request.url.path}
        )
        response.headers["X-Trace-ID"] = trace_id
        return response

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "store_backend": settings.store_backend,
            "metrics": app.state.services.metrics.get_metrics_summary()
        }

    app.include_router(vision_router)
    logger.info("Vision API ready", store_backend=settings.store_backend)
    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
