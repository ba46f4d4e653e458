"""Main FastAPI application for the workflow engine."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.endpoints import router, init_dependencies
from .config import AppConfig, load_config
from .core.assistant import WorkflowAssistant, WorkflowSuggester
from .core.capability_registry import CapabilityRegistry
from .core.compiler import WorkflowCompiler
from .core.dependency_resolver import DependencyResolver
from .core.error_recovery import RetryConfig
from .core.logging import setup_logging, get_logger
from .core.scheduler import ExecutionScheduler
from .core.validator import GraphValidator
from .storage.database import create_tables, get_database_engine, get_session_factory
from .storage.repository import ExecutionLogRepository, WorkflowRepository
from .tools.builtin import register_builtin_capabilities


def create_app(
    config: Optional[AppConfig] = None,
    registry: Optional[CapabilityRegistry] = None,
    suggester: Optional[WorkflowSuggester] = None
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Configuration; loaded from the environment at startup when omitted
        registry: Capability registry; a registry with the built-in
            capabilities is created when omitted
        suggester: Workflow suggestion service; generation and AI edits
            answer 503 without one
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        app_config = config or load_config()
        setup_logging(
            level=app_config.log_level.value,
            log_file=app_config.log_file,
            log_format=app_config.log_format,
            structured=app_config.log_structured,
            max_size=app_config.log_max_size,
            backup_count=app_config.log_backup_count
        )
        logger = get_logger(__name__)
        logger.info(f"Starting {app_config.app_name} {app_config.app_version}")

        engine = get_database_engine(
            app_config.database_url,
            echo=app_config.database_echo,
            connect_args=app_config.get_database_connect_args()
        )
        create_tables(engine)
        session_factory = get_session_factory(engine)
        logger.info("Database tables created")

        capability_registry = registry
        if capability_registry is None:
            capability_registry = register_builtin_capabilities(CapabilityRegistry())

        validator = GraphValidator()
        scheduler = ExecutionScheduler(
            registry=capability_registry,
            validator=validator,
            max_concurrency=app_config.max_concurrent_nodes,
            default_timeout_ms=app_config.default_node_timeout_ms,
            retry_config=RetryConfig(
                base_delay=app_config.retry_base_delay,
                max_delay=app_config.retry_max_delay,
                jitter=app_config.retry_jitter
            )
        )
        compiler = WorkflowCompiler(
            capability_registry,
            DependencyResolver(capability_registry),
            default_timeout_ms=app_config.default_node_timeout_ms,
            retry_base_delay=app_config.retry_base_delay,
            retry_max_delay=app_config.retry_max_delay
        )
        assistant = WorkflowAssistant(suggester, validator) if suggester is not None else None

        init_dependencies(
            registry=capability_registry,
            scheduler=scheduler,
            compiler=compiler,
            workflow_repository=WorkflowRepository(session_factory),
            execution_repository=ExecutionLogRepository(session_factory),
            assistant=assistant,
            validator=validator
        )
        app.state.config = app_config
        app.state.registry = capability_registry
        app.state.scheduler = scheduler
        logger.info(f"Core components initialized ({len(capability_registry)} capabilities)")

        yield

        logger.info(f"Shutting down {app_config.app_name}")
        try:
            scheduler.shutdown()
        except Exception as e:
            logger.error(f"Error during scheduler shutdown: {str(e)}")

    app = FastAPI(
        title="autoflow",
        description="Workflow graph engine: validate, run and compile automation workflows",
        version="1.0.0",
        lifespan=lifespan
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins if config else ["*"],
        allow_methods=["*"],
        allow_headers=["*"]
    )
    app.include_router(router)

    @app.get("/")
    async def root():
        """Root endpoint for health check."""
        return {"message": "autoflow is running"}

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "autoflow"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = load_config()
    uvicorn.run("autoflow.main:app", **settings.get_uvicorn_config())
