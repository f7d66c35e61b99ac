"""
Command line entry point.

Usage:
    flowcore validate definition.json
    flowcore run definition.json --context '{"amount": 500}'
    flowcore worker
    flowcore worker --once
"""
import argparse
import json
import sys
import threading
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError

from .config.settings import get_settings
from .domain.enums import StepType
from .domain.errors import DomainError
from .engine.orchestrator import WorkflowOrchestrator
from .repositories.memory_store import InMemoryWorkflowStore
from .repositories.mongo_client import create_client, create_indexes, get_database, health_check
from .repositories.mongo_store import MongoWorkflowStore
from .scheduler.timer_scheduler import TimerScheduler
from .services.definition_service import DefinitionService
from .services.handler_registry import StepHandlerRegistry, ServiceCallHandler
from .utils.logger import setup_logging


def _load_json(path: str) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def cmd_validate(args: argparse.Namespace) -> int:
    service = DefinitionService(InMemoryWorkflowStore())
    result = service.validate_payload(_load_json(args.definition))

    if result["is_valid"]:
        print(f"✅ {args.definition} is valid")
    else:
        print(f"❌ {args.definition} has {len(result['errors'])} error(s)")
    for error in result["errors"]:
        print(f"   ERROR   [{error['type']}] {error['message']} ({error['path']})")
    for warning in result["warnings"]:
        print(f"   WARNING [{warning['type']}] {warning['message']} ({warning['path']})")

    return 0 if result["is_valid"] else 1


def cmd_run(args: argparse.Namespace) -> int:
    payload = _load_json(args.definition)
    context = json.loads(args.context) if args.context else {}

    settings = get_settings()
    store = InMemoryWorkflowStore(lock_timeout_seconds=settings.instance_lock_timeout_seconds)
    definitions = DefinitionService(store)
    handlers = StepHandlerRegistry()
    handlers.register(StepType.SERVICE_CALL, ServiceCallHandler(settings=settings))
    orchestrator = WorkflowOrchestrator(store, handlers=handlers, settings=settings)

    definition = definitions.create_definition(
        payload["name"], payload.get("steps", []), description=payload.get("description")
    )
    definitions.activate(definition.definition_id)
    instance = orchestrator.start(definition.definition_id, initial_context=context, started_by="cli")

    report = {
        "instance": instance.model_dump(mode="json"),
        "executions": [e.model_dump(mode="json") for e in orchestrator.get_history(instance.instance_id)],
    }
    print(json.dumps(report, indent=2))
    return 0


def cmd_worker(args: argparse.Namespace) -> int:
    settings = get_settings()
    client = create_client(settings)
    health = health_check(client, settings)
    if health["status"] != "healthy":
        print(f"❌ MongoDB is {health['status']}: {health.get('error')}", file=sys.stderr)
        client.close()
        return 2

    db = get_database(client, settings)
    if not args.skip_indexes:
        create_indexes(db)

    store = MongoWorkflowStore(
        db,
        lock_lease_seconds=settings.instance_lock_lease_seconds,
        lock_timeout_seconds=settings.instance_lock_timeout_seconds,
        lock_retry_interval_seconds=settings.instance_lock_retry_interval_seconds,
        worker_id=settings.worker_id
    )
    handlers = StepHandlerRegistry()
    handlers.register(StepType.SERVICE_CALL, ServiceCallHandler(settings=settings))
    timers = TimerScheduler(settings=settings)
    orchestrator = WorkflowOrchestrator(store, handlers=handlers, scheduler=timers, settings=settings)
    timers.attach(fire=orchestrator.fire_timer, poll=orchestrator.sweep)

    try:
        if args.once:
            fired = orchestrator.poll_timers()
            print(f"✅ Fired {fired} due execution(s)")
            recovered = orchestrator.recover_stalled_executions()
            print(f"✅ Recovered {recovered} stalled execution(s)")
            return 0

        timers.start()
        print(f"Worker running against {settings.mongo_db}; press Ctrl+C to stop", file=sys.stderr)
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        timers.stop()
        client.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="flowcore", description="Workflow execution engine")
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Validate a definition document")
    validate.add_argument("definition", help="Path to the definition JSON file")
    validate.set_defaults(func=cmd_validate)

    run = subparsers.add_parser("run", help="Run a definition once in memory")
    run.add_argument("definition", help="Path to the definition JSON file")
    run.add_argument(
        "--context",
        type=str,
        default=None,
        help="Initial instance context as a JSON object"
    )
    run.set_defaults(func=cmd_run)

    worker = subparsers.add_parser("worker", help="Fire timers and delayed retries against MongoDB")
    worker.add_argument("--once", action="store_true", help="Run a single sweep of due and stalled executions and exit")
    worker.add_argument("--skip-indexes", action="store_true", help="Do not create MongoDB indexes on startup")
    worker.set_defaults(func=cmd_worker)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(stream=sys.stderr)

    try:
        return args.func(args)
    except DomainError as e:
        print(json.dumps(e.to_dict(), indent=2, default=str), file=sys.stderr)
        return 2
    except PyMongoError as e:
        print(f"❌ MongoDB error: {e}", file=sys.stderr)
        return 2
    except (OSError, json.JSONDecodeError) as e:
        print(f"❌ {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
