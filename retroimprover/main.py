import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from . import config, metrics
from .auth import Authenticator, InMemoryAuthenticator, SupabaseAuthenticator
from .pipeline.errors import ValidationError
from .pipeline.ledger import InMemoryLedger, SupabaseLedger
from .pipeline.orchestrator import PipelineService
from .pipeline.project_service import InMemoryProjectStore, SupabaseProjectStore
from .pipeline.routes import ai_router, project_router
from .pipeline.storage import ArtifactStore
from .provider_factory import ProviderFactory
from .rate_limiter import SlidingWindowLimiter, connect_redis

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_services() -> tuple[PipelineService, Authenticator, SlidingWindowLimiter]:
    """Wire the pipeline from the environment, degrading to in-memory backends."""
    if config.supabase_configured():
        from supabase import create_client

        sb = create_client(config.SUPABASE_URL, config.SUPABASE_SERVICE_ROLE_KEY)
        ledger, projects, authenticator = SupabaseLedger(sb), SupabaseProjectStore(sb), SupabaseAuthenticator(sb)
        logger.info("Using Supabase ledger, projects and auth")
    else:
        logger.warning("Supabase not configured — ledger, projects and auth are in-memory")
        ledger, projects, authenticator = InMemoryLedger(), InMemoryProjectStore(), InMemoryAuthenticator()

    jobs = ProviderFactory.build_job_client(
        config.VIDEO_PROVIDER,
        poll_interval=config.VIDEO_POLL_INTERVAL,
        max_poll_attempts=config.VIDEO_MAX_POLL_ATTEMPTS,
    )
    pipeline = PipelineService(ledger, projects, jobs, ArtifactStore.from_env())
    limiter = SlidingWindowLimiter(connect_redis())
    return pipeline, authenticator, limiter


async def _sweep_loop(pipeline: PipelineService, limiter: SlidingWindowLimiter, interval: float):
    """Periodically drop unclaimed speculative restores and idle rate-limit windows."""
    while True:
        await asyncio.sleep(interval)
        try:
            await pipeline.purge_expired()
            limiter.cleanup_expired()
        except Exception as e:
            logger.error(f"Sweep failed: {e}", exc_info=True)
            metrics.record_error("sweep", type(e).__name__, str(e))


def _describe_validation_error(exc: RequestValidationError) -> str:
    problems = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        problems.append(f"{field}: {err.get('msg')}" if field else str(err.get("msg")))
    return "; ".join(problems) or "Invalid request."


def create_app(
    pipeline: PipelineService = None,
    authenticator: Authenticator = None,
    limiter: SlidingWindowLimiter = None,
    sweep_interval: float = config.SPECULATIVE_SWEEP_INTERVAL,
) -> FastAPI:
    if pipeline is None or authenticator is None or limiter is None:
        built = build_services()
        pipeline = pipeline or built[0]
        authenticator = authenticator or built[1]
        limiter = limiter or built[2]

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("RetroImprover backend starting up...")
        metrics.set_gauge("start_time", time.time())
        sweeper = asyncio.create_task(_sweep_loop(pipeline, limiter, sweep_interval))
        yield
        logger.info("RetroImprover backend shutting down...")
        sweeper.cancel()
        await pipeline.shutdown()

    app = FastAPI(title="RetroImprover", lifespan=lifespan)
    app.state.pipeline = pipeline
    app.state.authenticator = authenticator
    app.state.limiter = limiter

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        error = ValidationError(_describe_validation_error(exc))
        logger.info(f"Rejected {request.method} {request.url.path}: {error.message}")
        return JSONResponse(status_code=error.status_code, content={"detail": error.to_detail()})

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(ai_router, prefix="/api")
    app.include_router(project_router, prefix="/api")
    app.mount("/uploads", StaticFiles(directory=str(pipeline.store.root)), name="uploads")

    @app.get("/api/health")
    def health_check():
        """Verify the service is running and which backends are configured."""
        return {
            "status": "ok",
            "environment": config.ENVIRONMENT,
            "gemini_api_key_set": bool(config.GEMINI_API_KEY),
            "video_provider": config.VIDEO_PROVIDER,
            "supabase_configured": config.supabase_configured(),
            "r2_configured": pipeline.store.remote is not None,
            "redis_connected": limiter.redis is not None,
        }

    @app.get("/api/metrics")
    def metrics_endpoint():
        """Return a snapshot of all backend metrics."""
        metrics.set_gauge("stages_in_flight", pipeline.in_flight())
        return metrics.get_snapshot()

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run("retroimprover.main:app", host="0.0.0.0", port=port, reload=config.ENVIRONMENT == "development")
