from contextlib import asynccontextmanager
from typing import Dict, Optional
from datetime import datetime
import asyncio

import httpx
import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from guide.application.api.route import chat, debug_run, guide
from guide.config import Settings
from guide.domain.context.context_compressor import ContextCompressor
from guide.domain.context.context_manager import ContextManager
from guide.domain.context.context_retriever import ContextRetriever
from guide.domain.context.fetchers import NoteFetcher, ReadingSessionFetcher, build_fetchers
from guide.domain.context.state.conversation_state import ConversationStateManager
from guide.domain.errors import GuideError, StageExecutionError, UpstreamModelError
from guide.domain.orchestration.core.debug_run_service import DebugRunService
from guide.domain.orchestration.core.guide_suggestions import GuideSuggestionService
from guide.domain.orchestration.core.pipeline_orchestrator import PipelineOrchestrator
from guide.domain.orchestration.stages.context_candidates import ContextCandidatesStage
from guide.domain.orchestration.stages.ingress import IngressStage
from guide.domain.orchestration.stages.model_call import ModelCallStage
from guide.domain.orchestration.stages.prompt_assembly import PromptAssemblyStage
from guide.domain.tool.tool_registry import build_context_tools
from guide.infrastructure.cache.memory_cache import StreamReplayCache
from guide.infrastructure.llm.openai_client import OpenAIClient
from guide.infrastructure.observability.langfuse_tracing import LangfuseTracer
from guide.infrastructure.observability.logging import MetricsCollector, setup_logging
from guide.infrastructure.persistence.artifact_store import InMemoryArtifactStore, SQLiteArtifactStore
from guide.infrastructure.persistence.conversation_state_store import (
    InMemoryConversationStateStore, SQLiteConversationStateStore
)
from guide.infrastructure.persistence.database import Database
from guide.infrastructure.persistence.debug_run_store import InMemoryDebugRunStore, SQLiteDebugRunStore
from guide.infrastructure.persistence.signal_store import (
    InMemorySignalStore, InMemoryUserDirectory, SQLiteSignalStore, SQLiteUserDirectory
)

logger = structlog.get_logger(__name__)


class ServiceContainer:
    """Wires stores, clients and services for one application instance"""

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.metrics = MetricsCollector()
        self.tracer = LangfuseTracer.from_settings(settings)
        self.cache = StreamReplayCache()
        self._sweeper: Optional[asyncio.Task] = None

        if settings.database_path:
            self.database = Database(settings.database_path)
            self.signals = SQLiteSignalStore(self.database)
            self.users = SQLiteUserDirectory(self.database)
            self.artifacts = SQLiteArtifactStore(self.database)
            self.runs = SQLiteDebugRunStore(self.database)
            self.conversations = SQLiteConversationStateStore(self.database)
        else:
            self.database = None
            self.signals = InMemorySignalStore()
            self.users = InMemoryUserDirectory()
            self.artifacts = InMemoryArtifactStore()
            self.runs = InMemoryDebugRunStore()
            self.conversations = InMemoryConversationStateStore()

        self.client: Optional[OpenAIClient] = None
        if settings.openai_api_key:
            self.client = OpenAIClient(settings.openai_api_key, settings.openai_base_url, http_client=http_client)

        fetchers = build_fetchers(self.signals.source)
        self.context_manager = ContextManager(
            retriever=ContextRetriever(fetchers, metrics=self.metrics),
            compressor=ContextCompressor(settings.context_payload_max_chars),
            users=self.users,
            metrics=self.metrics,
        )
        self.tools = build_context_tools(
            next(f for f in fetchers if isinstance(f, ReadingSessionFetcher)),
            next(f for f in fetchers if isinstance(f, NoteFetcher)),
        )

        self.conversation_state = ConversationStateManager(self.conversations, self.client, settings)
        self.orchestrator = PipelineOrchestrator(
            stages=[
                IngressStage(),
                ContextCandidatesStage(self.context_manager),
                PromptAssemblyStage(self.context_manager, self.conversation_state, settings),
                ModelCallStage(
                    self.client,
                    settings,
                    tracer=self.tracer,
                    tool_registry=self.tools if settings.chat_tools_enabled else None,
                ),
            ],
            artifact_store=self.artifacts,
            metrics=self.metrics,
        )
        self.debug_runs = DebugRunService(self.orchestrator, self.runs, self.artifacts)
        self.guide = GuideSuggestionService(
            self.context_manager,
            self.client,
            settings,
            metrics=self.metrics,
            tracer=self.tracer,
            tool_registry=self.tools,
        )

    async def startup(self) -> None:
        if self.database is not None:
            await self.database.ensure_schema()
        await self.cleanup_expired()
        if self.settings.artifact_cleanup_interval_seconds > 0:
            self._sweeper = asyncio.create_task(self._sweep_periodically())

    async def cleanup_expired(self) -> Dict[str, int]:
        """Remove expired stage artifacts and the debug runs that outlived them"""

        removed = {
            "artifacts": await self.artifacts.cleanup_expired(),
            "debug_runs": await self.runs.cleanup_expired(),
        }
        if any(removed.values()):
            logger.info("Expired records removed", **removed)
        self.metrics.increment_counter("persistence.expired_removed", sum(removed.values()))
        return removed

    async def _sweep_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.settings.artifact_cleanup_interval_seconds)
            try:
                await self.cleanup_expired()
            except Exception as e:
                logger.error("Expired record sweep failed", error=str(e))

    async def aclose(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        if self.client is not None:
            await self.client.aclose()
        self.tracer.flush()


def _error_body(message: str, details=None) -> dict:
    return {"error": message, "details": jsonable_encoder(details)}


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(GuideError)
    async def guide_error_handler(request: Request, exc: GuideError):
        details = None
        if isinstance(exc, UpstreamModelError):
            details = {"status": exc.status}
        elif isinstance(exc, StageExecutionError):
            details = {"stage": exc.stage}

        if exc.status_code >= 500:
            logger.error("Request failed", path=request.url.path, error=str(exc), status=exc.status_code)
        return JSONResponse(status_code=exc.status_code, content=_error_body(str(exc), details))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content=_error_body("Invalid request", exc.errors()))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content=_error_body(str(exc.detail)))


def create_app(settings: Optional[Settings] = None, container: Optional[ServiceContainer] = None) -> FastAPI:
    """Application factory; tests pass a prepared container"""

    settings = settings or (container.settings if container else Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            log_level=settings.log_level,
            log_format=settings.log_format,
            service_name=settings.service_name,
            environment=settings.environment,
        )
        active = container or ServiceContainer(settings)
        await active.startup()
        app.state.container = active
        logger.info("Guide server started", environment=settings.environment, model_configured=active.client is not None)
        yield
        await active.aclose()
        logger.info("Guide server shutdown")

    app = FastAPI(title="Guide Server", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    app.include_router(guide.router)
    app.include_router(chat.router)
    app.include_router(debug_run.router)

    @app.get("/health")
    async def health(request: Request):
        active: ServiceContainer = request.app.state.container
        return {
            "status": "healthy",
            "timestamp": datetime.utcnow().isoformat(),
            "model_configured": active.client is not None,
            "cache": await active.cache.get_stats(),
            "metrics": active.metrics.get_metrics_summary(),
        }

    return app


def main() -> None:
    settings = Settings.from_env()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
