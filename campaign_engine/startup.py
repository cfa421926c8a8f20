"""Application startup script and CLI interface."""

import sys
import json
import argparse

from pydantic import ValidationError

from .config import (
    AppConfig,
    load_config,
    set_config,
    get_development_config,
    get_production_config,
    get_testing_config,
    validate_config
)
from .core.exceptions import WorkflowEngineError
from .core.logging import get_logger, setup_logging
from .models.core import WorkflowDefinition, WorkflowStatus


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        description="Campaign Workflow Engine - enrolls contacts into messaging workflows"
    )

    # Server configuration
    parser.add_argument(
        "--host",
        help="Host to bind the server to (default: 0.0.0.0)"
    )

    parser.add_argument(
        "--port",
        type=int,
        help="Port to bind the server to (default: 8000)"
    )

    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development"
    )

    # Environment configuration
    parser.add_argument(
        "--env",
        choices=["development", "production", "testing"],
        help="Environment configuration preset"
    )

    parser.add_argument(
        "--config",
        help="Path to a .env configuration file"
    )

    # Database configuration
    parser.add_argument(
        "--database-url",
        help="Database connection URL"
    )

    # Logging configuration
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level"
    )

    parser.add_argument(
        "--log-file",
        help="Path to log file"
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode"
    )

    # Scheduler configuration
    parser.add_argument(
        "--scheduler-interval",
        type=float,
        help="Seconds between scheduler ticks"
    )

    parser.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Serve the API without running the scheduler loop"
    )

    # Commands
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run the API server (with the scheduler loop)")
    run_parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Number of worker processes (default: 1)"
    )

    subparsers.add_parser("scheduler", help="Run only the scheduler loop in the foreground")
    subparsers.add_parser("tick", help="Run a single scheduler pass and print its counters")

    # Database commands
    db_parser = subparsers.add_parser("db", help="Database management commands")
    db_subparsers = db_parser.add_subparsers(dest="db_command", help="Database commands")

    db_subparsers.add_parser("init", help="Initialize database tables")
    db_subparsers.add_parser("migrate", help="Create tables and scheduler indexes")
    db_subparsers.add_parser("reset", help="Reset database (drop and recreate tables)")

    # Definition commands
    definitions_parser = subparsers.add_parser("definitions", help="Workflow definition commands")
    definitions_subparsers = definitions_parser.add_subparsers(dest="definitions_command",
                                                               help="Definition commands")
    import_parser = definitions_subparsers.add_parser("import", help="Load definitions from a JSON file")
    import_parser.add_argument("path", help="JSON file holding one definition or a list of them")
    import_parser.add_argument("--activate", action="store_true", help="Store the definitions as active")
    validate_parser = definitions_subparsers.add_parser("validate", help="Validate definitions in a JSON file")
    validate_parser.add_argument("path", help="JSON file holding one definition or a list of them")

    # Configuration commands
    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")

    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("validate", help="Validate configuration")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Load configuration based on command line arguments."""

    if args.env == "development":
        config = get_development_config()
    elif args.env == "production":
        config = get_production_config()
    elif args.env == "testing":
        config = get_testing_config()
    else:
        config = load_config(args.config)

    # Override with command line arguments
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.reload:
        config.reload = args.reload
    if args.database_url:
        config.database_url = args.database_url
    if args.log_level:
        config.log_level = args.log_level
    if args.log_file:
        config.log_file = args.log_file
    if args.debug:
        config.debug = args.debug
    if args.scheduler_interval:
        config.scheduler_interval_seconds = args.scheduler_interval
    if args.no_scheduler:
        config.scheduler_enabled = False

    # Re-run field validation on the overridden values
    return set_config(AppConfig.model_validate(config.model_dump()))


def run_server(config: AppConfig, workers: int = 1):
    """Run the API server."""
    import uvicorn
    from .factory import create_app

    logger = get_logger(__name__)
    logger.info(f"Starting server with {workers} worker(s)")

    uvicorn_config = config.get_uvicorn_config()

    if workers > 1:
        uvicorn.run(
            "campaign_engine.factory:create_app",
            factory=True,
            workers=workers,
            **uvicorn_config
        )
    else:
        app = create_app(config)
        uvicorn.run(app, **uvicorn_config)


def _setup_cli_logging(config: AppConfig):
    setup_logging(
        level=config.log_level.value,
        log_file=config.log_file,
        log_format=config.log_format,
        structured=config.log_structured,
        max_size=config.log_max_size,
        backup_count=config.log_backup_count
    )


def run_scheduler_command(command: str, config: AppConfig):
    """Run the scheduler in the foreground, or once."""
    from .factory import build_components
    from .storage.migrations import run_migrations

    _setup_cli_logging(config)
    state = build_components(config)
    run_migrations(state.engine)

    try:
        if command == "tick":
            result = state.scheduler.tick()
            print(json.dumps(result.model_dump(mode="json"), indent=2))
        else:
            state.scheduler.run_forever()
    finally:
        state.scheduler.shutdown()


def run_database_command(command: str, config: AppConfig):
    """Run database management commands."""
    from .storage.database import create_tables, drop_tables, get_database_engine
    from .storage.migrations import run_migrations

    logger = get_logger(__name__)
    engine = get_database_engine(config.database_url, echo=config.database_echo,
                                 connect_args=config.get_database_connect_args())

    if command == "init":
        logger.info("Initializing database tables...")
        create_tables(engine)
        logger.info("Database tables created successfully")

    elif command == "migrate":
        logger.info("Running database migrations...")
        run_migrations(engine)
        logger.info("Database migrations completed successfully")

    elif command == "reset":
        logger.info("Resetting database...")
        drop_tables(engine)
        run_migrations(engine)
        logger.info("Database reset completed successfully")


def _read_definitions(path: str):
    with open(path, "r", encoding="utf-8") as handle:
        document = json.load(handle)
    items = document if isinstance(document, list) else [document]
    return [WorkflowDefinition.model_validate(item) for item in items]


def run_definitions_command(command: str, path: str, config: AppConfig, activate: bool = False):
    """Validate or import workflow definitions from a JSON file."""
    from .core.definition_store import DefinitionStore
    from .storage.database import get_database_engine, get_session_factory
    from .storage.migrations import run_migrations

    try:
        definitions = _read_definitions(path)
    except (OSError, ValueError, ValidationError) as e:
        print(f"Could not read definitions from {path}: {e}")
        sys.exit(1)

    engine = get_database_engine(config.database_url, echo=config.database_echo,
                                 connect_args=config.get_database_connect_args())
    store = DefinitionStore(get_session_factory(engine))

    if command == "validate":
        failed = False
        for definition in definitions:
            result = store.validate_definition(definition)
            print(f"{definition.id}: {'valid' if result.is_valid else 'INVALID'}")
            for error in result.errors:
                print(f"  error: {error}")
            for warning in result.warnings:
                print(f"  warning: {warning}")
            failed = failed or not result.is_valid
        if failed:
            sys.exit(1)
        return

    run_migrations(engine)
    for definition in definitions:
        if activate:
            definition = definition.model_copy(update={"status": WorkflowStatus.ACTIVE})
        stored = store.save_definition(definition)
        print(f"Imported {stored.id} (version {stored.version}, {stored.status.value})")


def show_configuration(config: AppConfig):
    """Show current configuration."""
    print("Current Configuration:")
    print(f"  App Name: {config.app_name}")
    print(f"  Version: {config.app_version}")
    print(f"  Debug: {config.debug}")
    print(f"  Host: {config.host}")
    print(f"  Port: {config.port}")
    print(f"  Database URL: {config.database_url}")
    print(f"  Log Level: {config.log_level.value}")
    print(f"  Scheduler: {'enabled' if config.scheduler_enabled else 'disabled'}, "
          f"every {config.scheduler_interval_seconds}s, batch {config.scheduler_batch_size}")
    print(f"  Message Retries: {config.retry_max_retries} "
          f"(base {config.retry_base_delay_seconds}s, cap {config.retry_max_delay_seconds}s)")
    print(f"  Channel URL: {config.channel_url or 'in-memory'}")
    print(f"  Contacts URL: {config.contacts_url or 'in-memory'}")


def validate_configuration_command(config: AppConfig):
    """Validate configuration and show results."""
    try:
        warnings = validate_config(config)
        print("Configuration validation: PASSED")
        for warning in warnings:
            print(f"Warning: {warning}")
    except ValueError as e:
        print("Configuration validation: FAILED")
        print(f"Error: {e}")
        sys.exit(1)


def main():
    """Main entry point for the application."""
    parser = create_argument_parser()
    args = parser.parse_args()

    try:
        config = load_configuration(args)

        if args.command == "config":
            if args.config_command == "show":
                show_configuration(config)
            elif args.config_command == "validate":
                validate_configuration_command(config)
            else:
                print("Configuration command required. Use --help for options.")
                sys.exit(1)
            return

        validate_config(config)

        if args.command == "run" or args.command is None:
            workers = getattr(args, 'workers', 1)
            run_server(config, workers)

        elif args.command in ("scheduler", "tick"):
            run_scheduler_command(args.command, config)

        elif args.command == "db":
            if args.db_command:
                run_database_command(args.db_command, config)
            else:
                print("Database command required. Use --help for options.")
                sys.exit(1)

        elif args.command == "definitions":
            if args.definitions_command:
                run_definitions_command(args.definitions_command, args.path, config,
                                        activate=getattr(args, "activate", False))
            else:
                print("Definitions command required. Use --help for options.")
                sys.exit(1)
        else:
            parser.print_help()

    except (WorkflowEngineError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
