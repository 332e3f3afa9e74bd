"""CLI entrypoint for the lifecycle engine.

Operates on the JSON-file stores under `LIFECYCLE_STATE_PATH`, so successive
invocations see each other's instances.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from crm_lifecycle import __version__
from crm_lifecycle.statemachine.config import LifecycleSettings
from crm_lifecycle.statemachine.definitions.compiler import compile_definition
from crm_lifecycle.statemachine.definitions.registry import read_definition_file
from crm_lifecycle.statemachine.errors import DefinitionError, LifecycleError
from crm_lifecycle.statemachine.lifecycle import LifecycleEngine, build_engine
from crm_lifecycle.statemachine.logging import configure_logging
from crm_lifecycle.statemachine.runtime.adapters import default_case_handlers

logger = logging.getLogger(__name__)


def _parse_fields(values: list[str] | None) -> dict[str, Any]:
    """Parse repeated `key=value` options; values are JSON when they parse as JSON."""

    fields: dict[str, Any] = {}
    for item in values or []:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Expected key=value, got {item!r}")
        try:
            fields[key.strip()] = json.loads(raw)
        except json.JSONDecodeError:
            fields[key.strip()] = raw
    return fields


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="crm-lifecycle",
        description="CRM entity lifecycle state machine engine",
    )
    parser.add_argument("--version", action="version", version=f"crm-lifecycle {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Validate state machine definition files")
    validate.add_argument("paths", nargs="+", type=Path, help="Definition JSON files")

    subparsers.add_parser("definitions", help="List loaded definitions and their states")

    def _instance_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--object", dest="object_type", required=True, help="Object type, e.g. 'case'")
        p.add_argument("--id", dest="entity_id", required=True, help="Entity id")

    create = subparsers.add_parser("create", help="Bind an entity to its lifecycle")
    _instance_args(create)
    create.add_argument(
        "--field",
        action="append",
        default=None,
        help="Initial field value as key=value (repeatable; JSON values accepted)",
    )

    submit = subparsers.add_parser("submit", help="Submit an event to an instance")
    _instance_args(submit)
    submit.add_argument("--event", required=True, help="Event name")
    submit.add_argument(
        "--field",
        action="append",
        default=None,
        help="Changed field as key=value (repeatable; JSON values accepted)",
    )
    submit.add_argument(
        "--origin",
        choices=["user", "admin"],
        default="admin",
        help="Event origin",
    )

    show = subparsers.add_parser("show", help="Show an instance and its action records")
    _instance_args(show)

    sweep = subparsers.add_parser("sweep", help="Fire every due timeout once and wait for the results")
    sweep.add_argument(
        "--resume-actions",
        action="store_true",
        help="Also re-dispatch side effects left pending by an earlier run",
    )

    discard = subparsers.add_parser("discard", help="Discard an instance and its timer")
    _instance_args(discard)

    return parser


def _validate(paths: list[Path]) -> int:
    handlers = default_case_handlers()
    failed = 0
    for path in paths:
        try:
            definition = compile_definition(read_definition_file(path), handlers)
        except (DefinitionError, OSError) as e:
            failed += 1
            print(f"INVALID {path}: {e}", file=sys.stderr)
            continue
        print(f"OK {path}: object={definition.object_type} states={len(definition.states)}")
    return 1 if failed else 0


def _run(engine: LifecycleEngine, args: argparse.Namespace) -> int:
    if args.command == "definitions":
        for object_type in engine.registry.object_types():
            definition = engine.registry.get(object_type)
            states = ", ".join(
                f"{s.name}{' (final)' if s.is_final else ''}" for s in definition.states.values()
            )
            print(f"{object_type}: {definition.name} [initial={definition.initial}] {states}")
        return 0

    if args.command == "create":
        instance = engine.ingress.create_instance(
            args.object_type, args.entity_id, _parse_fields(args.field)
        )
        _print_json(instance.model_dump(mode="json"))
        return 0

    if args.command == "submit":
        result = engine.ingress.submit_event(
            args.object_type,
            args.entity_id,
            args.event,
            _parse_fields(args.field),
            origin=args.origin,
        )
        _print_json(result.to_json())
        return 0

    if args.command == "show":
        instance = engine.ingress.get_instance(args.object_type, args.entity_id)
        if instance is None:
            print(f"No instance for {args.object_type}/{args.entity_id}", file=sys.stderr)
            return 1
        records = engine.action_records.list(args.object_type, args.entity_id)
        _print_json(
            {
                "instance": instance.model_dump(mode="json"),
                "actions": [r.model_dump(mode="json") for r in records],
            }
        )
        return 0

    if args.command == "sweep":
        if args.resume_actions:
            engine.actions.resume_pending().result()
        futures = engine.sweep()
        for future in futures:
            future.exception()
        print(f"Fired {len(futures)} timeout event(s)")
        return 0

    if args.command == "discard":
        engine.ingress.discard_instance(args.object_type, args.entity_id)
        print(f"Discarded {args.object_type}/{args.entity_id}")
        return 0

    logger.error("Unknown command", extra={"command": args.command})
    return 2


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = LifecycleSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    if args.command == "validate":
        return _validate(args.paths)

    engine: LifecycleEngine | None = None
    try:
        engine = build_engine(settings)
        return _run(engine, args)

    except (LifecycleError, ValueError) as e:
        logger.warning(str(e), extra={"command": args.command})
        print(str(e), file=sys.stderr)
        return 1

    except Exception:
        logger.exception("Command failed")
        return 1

    finally:
        if engine is not None:
            engine.stop()


if __name__ == "__main__":
    raise SystemExit(main())
