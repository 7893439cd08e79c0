"""Command line interface: serve, manage the catalog, route one request."""

import argparse
import asyncio
import json
import sys

from .config import (
    AppConfig,
    load_config,
    get_development_config,
    get_production_config,
    get_testing_config,
    validate_config
)
from .core.exceptions import WorkflowEngineError
from .core.logging import get_logger, setup_logging

logger = get_logger(__name__)

PRESETS = {
    "development": get_development_config,
    "production": get_production_config,
    "testing": get_testing_config,
}

# argparse destination -> AppConfig field
OVERRIDES = {
    "host": "host",
    "port": "port",
    "reload": "reload",
    "database_url": "database_url",
    "log_level": "log_level",
    "log_file": "log_file",
    "debug": "debug",
}


def create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cognitive-workflow",
        description="Route natural-language requests to workflows and run them"
    )

    parser.add_argument("--env", choices=sorted(PRESETS), help="Configuration preset instead of the environment")
    parser.add_argument("--config", help="Path to a .env file")
    parser.add_argument("--host")
    parser.add_argument("--port", type=int)
    parser.add_argument("--reload", action="store_true", help="Restart the server on code changes")
    parser.add_argument("--database-url")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    parser.add_argument("--log-file")
    parser.add_argument("--debug", action="store_true")

    commands = parser.add_subparsers(dest="command")

    commands.add_parser("run", help="Serve the HTTP API")

    db = commands.add_parser("db", help="Manage database tables")
    db_commands = db.add_subparsers(dest="db_command")
    db_commands.add_parser("init", help="Create missing tables")
    db_commands.add_parser("reset", help="Drop and recreate all tables")

    catalog = commands.add_parser("catalog", help="Import or list the stored catalog")
    catalog_commands = catalog.add_subparsers(dest="catalog_command")
    catalog_import = catalog_commands.add_parser("import", help="Import a catalog JSON document")
    catalog_import.add_argument("path")
    catalog_commands.add_parser("show", help="List stored instances and intents")
    catalog_activate = catalog_commands.add_parser("activate", help="Pin the version a bare id resolves to")
    catalog_activate.add_argument("instance_id")
    catalog_activate.add_argument("version", nargs="?", help="Omit to clear the pin")

    route = commands.add_parser("route", help="Route one request and print the outcome as JSON")
    route.add_argument("text")
    route.add_argument("--report", action="store_true", help="Include the full report tree")

    config = commands.add_parser("config", help="Inspect the effective configuration")
    config_commands = config.add_subparsers(dest="config_command")
    config_commands.add_parser("show")
    config_commands.add_parser("validate")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Start from a preset (or the environment) and apply command line overrides."""
    config = PRESETS[args.env]() if args.env else load_config(args.config)

    overrides = {
        field: getattr(args, dest)
        for dest, field in OVERRIDES.items()
        if getattr(args, dest) not in (None, False)
    }
    if not overrides:
        return config
    return AppConfig.model_validate({**config.model_dump(), **overrides})


def _engine(config: AppConfig):
    from .storage.database import build_engine

    return build_engine(config.database_url, echo=config.database_echo,
                        connect_args=config.get_database_connect_args())


def run_server(config: AppConfig):
    import uvicorn
    from .factory import create_app

    validate_config(config)
    uvicorn.run(create_app(config), **config.get_uvicorn_config())


def run_database_command(command: str, config: AppConfig):
    from .storage.database import create_tables, drop_tables

    engine = _engine(config)
    if command == "reset":
        logger.warning(f"Dropping all tables in {config.database_url}")
        drop_tables(engine)
    create_tables(engine)
    logger.info(f"Database '{command}' completed")


def run_catalog_command(command: str, args: argparse.Namespace, config: AppConfig):
    from .models.core import InstanceKind
    from .storage.catalog_store import CatalogDocument, CatalogStore
    from .storage.database import create_tables, get_session_factory

    engine = _engine(config)
    create_tables(engine)
    store = CatalogStore(get_session_factory(engine))

    if command == "import":
        with open(args.path, "r", encoding="utf-8") as handle:
            document = CatalogDocument.model_validate(json.load(handle))
        counts = store.import_document(document)
        print(f"Imported {counts['nodes']} node(s), {counts['workflows']} workflow(s), "
              f"{counts['intents']} intent(s)")
        return

    if command == "activate":
        store.set_active(args.instance_id, args.version)
        print(f"Pinned {args.instance_id} to v{args.version}" if args.version else f"Unpinned {args.instance_id}")
        return

    pins = store.load_pins()
    for kind in InstanceKind:
        for definition in store.load_instances(kind):
            state = "enabled" if definition.enabled else "disabled"
            if pins.get(definition.id) == definition.version:
                state += ", pinned"
            print(f"  {kind.value:<8} {definition.id} v{definition.version} ({state})")
    for intent in store.load_intents():
        print(f"  intent   {intent.id} -> {intent.workflow_id} ({len(intent.utterances)} utterance(s))")


async def route_once(config: AppConfig, text: str, include_report: bool = False) -> int:
    """Route ``text`` through freshly built components and print the outcome.

    Returns the process exit code: 0 for a success or a clean no-match,
    2 for anything else.
    """
    from .core.ai_provider import HttpAIProvider
    from .factory import build_components
    from .models.core import RouteOutcome
    from .storage.catalog_store import reload_catalog

    state = build_components(config)
    try:
        reload_catalog(state.store, state.nodes, state.workflows, state.catalog)
        result = await state.orchestrator.route_and_run(text)
    finally:
        if isinstance(state.provider, HttpAIProvider):
            await state.provider.aclose()

    body = {
        "outcome": result.outcome.value,
        "intent": result.detection.intent.id if result.detection.intent else None,
        "score": result.detection.score,
        "output": result.output,
        "error": result.error,
        "total_tokens": result.token_usage.total_tokens,
    }
    if include_report:
        body["report"] = result.report.model_dump(mode="json")
    print(json.dumps(body, indent=2, default=str))
    return 0 if result.outcome in (RouteOutcome.SUCCEEDED, RouteOutcome.NO_MATCH) else 2


def show_configuration(config: AppConfig):
    hidden = {"ai_api_key"}
    for name, value in config.model_dump(mode="json").items():
        if name in hidden and value:
            value = "***"
        print(f"  {name:<30} {value}")


def main():
    parser = create_argument_parser()
    args = parser.parse_args()

    try:
        config = load_configuration(args)
        setup_logging(level=config.log_level.value, log_file=config.log_file,
                      log_format=config.log_format, structured=config.log_structured)

        if args.command in (None, "run"):
            run_server(config)
        elif args.command == "db" and args.db_command:
            run_database_command(args.db_command, config)
        elif args.command == "catalog" and args.catalog_command:
            run_catalog_command(args.catalog_command, args, config)
        elif args.command == "route":
            sys.exit(asyncio.run(route_once(config, args.text, args.report)))
        elif args.command == "config" and args.config_command == "show":
            show_configuration(config)
        elif args.command == "config" and args.config_command == "validate":
            validate_config(config)
            print("Configuration is valid")
        else:
            parser.parse_args([args.command, "--help"])
    except (ValueError, OSError, WorkflowEngineError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
