"""CLI entrypoint for pdl-engine."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from importlib import metadata
import json
from pathlib import Path
import sys
from typing import Any

from .config import ensure_config_dir, load_config
from .engine import Engine
from .events.model import Event
from .exceptions import PDLError
from .logging_utils import configure_logging
from .models import Project


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pdl-engine",
        description="pdl-engine - phase lifecycle and event coordination",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    parser.add_argument("--config", type=Path, help="Path to config.toml")
    commands = parser.add_subparsers(dest="command")

    init = commands.add_parser("init-project", help="Create a project and its phases")
    init.add_argument("name")
    init.add_argument("--slug", required=True)
    init.add_argument("--created-by", default=None)
    init.add_argument("--description", default=None)

    transition = commands.add_parser("transition", help="Move a project to another phase")
    transition.add_argument("project", help="Project id or slug")
    transition.add_argument("from_phase")
    transition.add_argument("to_phase")
    transition.add_argument("--reason", default="")
    transition.add_argument("--notes", default="")
    transition.add_argument("--gate-approval", action="store_true")
    transition.add_argument("--by", dest="triggered_by", default=None)

    emit = commands.add_parser("emit", help="Emit a raw event")
    emit.add_argument("type")
    emit.add_argument("--payload", default="{}", help="JSON object")
    emit.add_argument("--project", default=None, help="Project id or slug")
    emit.add_argument("--agent", default=None)
    emit.add_argument("--brief", default=None)
    emit.add_argument("--ref", dest="references", action="append", default=[])

    history = commands.add_parser("history", help="Show stored events for a project")
    history.add_argument("project", help="Project id or slug")
    history.add_argument("--type", dest="event_type", default=None)
    history.add_argument("--phase", default=None)
    history.add_argument("--agent", default=None)
    history.add_argument("--limit", type=int, default=20)

    status = commands.add_parser("status", help="Show a project's phases")
    status.add_argument("project", help="Project id or slug")
    return parser


def _print_json(data: Any) -> None:
    print(json.dumps(data, ensure_ascii=False, default=str))


async def _resolve_project(engine: Engine, reference: str) -> Project:
    project = await engine.store.get_project(reference)
    if project is None:
        project = await engine.store.get_project_by_slug(reference)
    if project is None:
        raise PDLError(f"Unknown project {reference!r}.")
    return project


def _event_row(event: Event) -> dict[str, Any]:
    return {
        "id": event.id,
        "timestamp": event.timestamp.isoformat(),
        "type": event.type,
        "phase": event.phase_context,
        "agent": event.origin_agent,
        "brief": event.brief,
    }


async def _run(args: argparse.Namespace, config: dict[str, dict[str, Any]]) -> int:
    engine = Engine.from_config(config)
    async with engine:
        if args.command == "init-project":
            project = await engine.create_project(
                args.name,
                args.slug,
                created_by=args.created_by,
                description=args.description,
            )
            _print_json({"id": project.id, "slug": project.slug, "phase": engine.current_phase})
        elif args.command == "transition":
            project = await _resolve_project(engine, args.project)
            result = await engine.transition_phase(
                project.id,
                args.from_phase,
                args.to_phase,
                args.reason,
                gate_approval=args.gate_approval,
                notes=args.notes,
                triggered_by=args.triggered_by,
            )
            _print_json(
                {
                    "event_id": result.event_id,
                    "completed": result.completed.name,
                    "active": result.activated.name,
                }
            )
        elif args.command == "emit":
            try:
                payload = json.loads(args.payload)
            except ValueError as exc:
                raise PDLError(f"--payload is not valid JSON: {exc}") from exc
            if not isinstance(payload, dict):
                raise PDLError("--payload must be a JSON object.")
            project_id = None
            if args.project:
                project = await _resolve_project(engine, args.project)
                project_id = project.id
                current = await engine.store.get_current_phase(project.id)
                if current is not None:
                    engine.bus.current_phase = current.name
            event_id = engine.emit_event(
                args.type,
                payload,
                brief=args.brief,
                references=args.references,
                origin_agent=args.agent,
                project_id=project_id,
            )
            _print_json({"event_id": event_id})
        elif args.command == "history":
            project = await _resolve_project(engine, args.project)
            events = await engine.get_project_history(
                project.id,
                event_type=args.event_type,
                phase_context=args.phase,
                origin_agent=args.agent,
                limit=args.limit,
            )
            for event in events:
                _print_json(_event_row(event))
        elif args.command == "status":
            project = await _resolve_project(engine, args.project)
            phases = await engine.store.get_phases(project.id)
            _print_json(
                {
                    "project": project.slug,
                    "phases": [
                        {
                            "name": phase.name,
                            "status": phase.status.value,
                            "gate_approved": phase.gate_approved,
                        }
                        for phase in phases
                    ],
                    "connectivity": engine.connectivity.state.value,
                    "buffered": len(engine.connectivity.buffer),
                }
            )
        await engine.flush()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Parse CLI flags, load configuration, and run one command."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("pdl-engine")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"pdl-engine {version}")
        return 0

    if args.command is None:
        parser.print_help()
        return 2

    if args.config is None:
        ensure_config_dir()
    config = load_config(args.config)
    configure_logging(config["logging"])
    try:
        return asyncio.run(_run(args, config))
    except PDLError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
