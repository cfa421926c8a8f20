"""Application factory for creating FastAPI instances."""

from typing import Callable, Optional
from datetime import datetime
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from sqlalchemy import Engine, text
from sqlalchemy.orm import sessionmaker

from .config import AppConfig, get_config, validate_config
from .core.clock import utc_now
from .core.definition_store import DefinitionStore
from .core.enrollment_store import EnrollmentStore
from .core.error_recovery import ExponentialBackoff, health_checker
from .core.logging import setup_logging, get_logger
from .core.scheduler import Scheduler
from .core.step_executor import StepExecutor
from .core.trigger_evaluator import TriggerEvaluator
from .integrations import (
    ContactDirectory,
    HttpContactDirectory,
    HttpMessageChannel,
    HttpNotifier,
    InMemoryContactDirectory,
    InMemoryMessageChannel,
    InMemoryNotifier,
    MessageChannel,
    Notifier,
)
from .models.core import BusinessHours, WorkflowSettings
from .storage.database import get_database_engine, get_session_factory
from .storage.migrations import run_migrations
from .api.endpoints import router, init_dependencies


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.engine: Optional[Engine] = None
        self.session_factory: Optional[sessionmaker] = None
        self.definition_store: Optional[DefinitionStore] = None
        self.enrollment_store: Optional[EnrollmentStore] = None
        self.channel: Optional[MessageChannel] = None
        self.directory: Optional[ContactDirectory] = None
        self.notifier: Optional[Notifier] = None
        self.step_executor: Optional[StepExecutor] = None
        self.trigger_evaluator: Optional[TriggerEvaluator] = None
        self.scheduler: Optional[Scheduler] = None
        self.logger = None


# Global application state
app_state = ApplicationState()


def build_integrations(config: AppConfig):
    """HTTP adapters for configured services, in-memory ones otherwise."""
    channel = (
        HttpMessageChannel(config.channel_url, api_key=config.api_key, timeout=config.http_timeout)
        if config.channel_url else InMemoryMessageChannel()
    )
    directory = (
        HttpContactDirectory(config.contacts_url, api_key=config.api_key, timeout=config.http_timeout)
        if config.contacts_url else InMemoryContactDirectory()
    )
    notifier = (
        HttpNotifier(config.notifications_url, api_key=config.api_key, timeout=config.http_timeout)
        if config.notifications_url else InMemoryNotifier()
    )
    return channel, directory, notifier


def build_components(
    config: AppConfig,
    engine: Optional[Engine] = None,
    channel: Optional[MessageChannel] = None,
    directory: Optional[ContactDirectory] = None,
    notifier: Optional[Notifier] = None,
    clock: Callable[[], datetime] = utc_now,
) -> ApplicationState:
    """Wire stores, integrations, executor and scheduler for ``config``.

    Explicit adapters and engine take precedence over the configured ones,
    which lets tests run the full stack against in-memory collaborators.
    """
    state = ApplicationState()
    state.config = config
    state.engine = engine or get_database_engine(
        config.database_url,
        echo=config.database_echo,
        connect_args=config.get_database_connect_args(),
        pool_size=config.database_pool_size,
        max_overflow=config.database_max_overflow
    )
    state.session_factory = get_session_factory(state.engine)

    default_channel, default_directory, default_notifier = build_integrations(config)
    state.channel = channel or default_channel
    state.directory = directory or default_directory
    state.notifier = notifier or default_notifier

    default_settings = WorkflowSettings(
        timezone=config.default_timezone,
        business_hours=BusinessHours(start=config.business_hours_start, end=config.business_hours_end),
    )
    state.definition_store = DefinitionStore(state.session_factory, default_settings=default_settings)
    state.enrollment_store = EnrollmentStore(state.session_factory)
    state.step_executor = StepExecutor(
        definition_store=state.definition_store,
        enrollment_store=state.enrollment_store,
        channel=state.channel,
        directory=state.directory,
        notifier=state.notifier,
        backoff=ExponentialBackoff(
            base_delay=config.retry_base_delay_seconds,
            max_delay=config.retry_max_delay_seconds,
            max_retries=config.retry_max_retries
        ),
        send_timeout=config.send_timeout,
        max_concurrent_sends=config.scheduler_max_workers,
        clock=clock
    )
    state.trigger_evaluator = TriggerEvaluator(
        state.definition_store, state.enrollment_store, directory=state.directory, clock=clock
    )
    state.scheduler = Scheduler(
        state.enrollment_store,
        state.step_executor,
        trigger_evaluator=state.trigger_evaluator,
        clock=clock,
        **config.get_scheduler_kwargs()
    )
    return state


def setup_health_checks(state: ApplicationState, logger) -> None:
    """Set up health check functions."""
    def check_database():
        with state.engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return {"message": "Database connection successful"}

    def check_scheduler():
        scheduler = state.scheduler
        last_tick = scheduler.last_tick
        return {
            "message": "Scheduler operational",
            "running": scheduler.is_running,
            "last_tick_at": last_tick.started_at.isoformat() if last_tick else None,
            "enrollments": state.enrollment_store.count_by_status(),
        }

    def check_channel():
        breaker = getattr(state.channel, "circuit_breaker", None)
        if breaker is not None and breaker.state == "open":
            raise RuntimeError("Message channel circuit is open")
        return {"message": "Message channel available", "adapter": type(state.channel).__name__}

    health_checker.register_check("database", check_database, timeout=state.config.health_check_timeout)
    health_checker.register_check("scheduler", check_scheduler, timeout=3.0)
    health_checker.register_check("message_channel", check_channel, timeout=2.0)

    logger.info("Health checks registered")


def initialize_database(state: ApplicationState, logger) -> None:
    """Create tables and scheduler indexes."""
    try:
        run_migrations(state.engine)
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


def graceful_shutdown(state: ApplicationState, logger) -> None:
    """Handle graceful shutdown of application components."""
    logger.info(f"Shutting down {state.config.app_name}")

    try:
        state.scheduler.shutdown()
        logger.info("Scheduler shutdown completed")
    except Exception as e:
        logger.error(f"Error during scheduler shutdown: {str(e)}")


def create_lifespan_handler(config: AppConfig, components: Optional[ApplicationState] = None):
    """Create application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        try:
            state = components or build_components(config)
            initialize_database(state, logger)
            state.logger = logger

            for name in ("config", "engine", "session_factory", "definition_store", "enrollment_store",
                         "channel", "directory", "notifier", "step_executor", "trigger_evaluator", "scheduler"):
                setattr(app_state, name, getattr(state, name))
            app_state.logger = logger

            init_dependencies(
                definition_store=state.definition_store,
                enrollment_store=state.enrollment_store,
                trigger_evaluator=state.trigger_evaluator,
                scheduler=state.scheduler
            )
            setup_health_checks(state, logger)

            if config.scheduler_enabled:
                state.scheduler.start()

            logger.info("Application startup completed successfully")
        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            raise

        yield

        try:
            graceful_shutdown(state, logger)
        except Exception as e:
            logger.error(f"Error during graceful shutdown: {e}")

    return lifespan


def create_app(config: Optional[AppConfig] = None, components: Optional[ApplicationState] = None) -> FastAPI:
    """Create and configure FastAPI application instance."""

    if config is None:
        config = components.config if components is not None else get_config()

    for warning in validate_config(config):
        get_logger(__name__).warning(warning)

    app = FastAPI(
        title=config.app_name,
        description="Enrolls CRM contacts into campaign workflows and advances them on a schedule",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, components)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    from .core.middleware import ErrorHandlingMiddleware, PerformanceMonitoringMiddleware

    app.add_middleware(ErrorHandlingMiddleware)
    if config.enable_performance_monitoring:
        app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)

    app.include_router(router)

    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""
    service_name = config.app_name.lower().replace(" ", "-")

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        return {
            "status": "healthy",
            "service": service_name,
            "version": config.app_version
        }

    @app.get("/health/detailed")
    async def detailed_health_check():
        """Detailed health check endpoint with component status."""
        try:
            results = await health_checker.run_all_checks()
            status_code = 200 if results["overall_status"] == "healthy" else 503

            return JSONResponse(
                status_code=status_code,
                content={
                    "service": service_name,
                    "version": config.app_version,
                    **results
                }
            )
        except Exception as e:
            get_logger(__name__).error(f"Health check failed: {str(e)}")
            return JSONResponse(
                status_code=503,
                content={
                    "service": service_name,
                    "overall_status": "unhealthy",
                    "error": str(e),
                    "timestamp": utc_now().isoformat()
                }
            )

    @app.get("/health/ready")
    async def readiness_check():
        """Readiness check endpoint for container orchestration."""
        results = {}
        for check_name in ("database",):
            if check_name in health_checker.checks:
                results[check_name] = await health_checker.run_check(check_name)

        ready = bool(results) and all(result.get("status") == "healthy" for result in results.values())

        return JSONResponse(
            status_code=200 if ready else 503,
            content={
                "ready": ready,
                "checks": results,
                "timestamp": utc_now().isoformat()
            }
        )

    @app.get("/health/live")
    async def liveness_check():
        """Liveness check endpoint for container orchestration."""
        return {
            "alive": True,
            "timestamp": utc_now().isoformat()
        }
