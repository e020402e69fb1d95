"""Command line interface for managing protocols and driving runs."""

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

from .config.loader import ConfigLoader
from .engine import ProtocolRunEngine
from .errors import NotFoundError, ProtocolError, SystemFailureError
from .logging.config import configure_logging, get_logger
from .state.models import ProtocolStep

logger = get_logger(__name__)


def parse_step(value: str) -> ProtocolStep:
    """Parse ``label:minutes`` into a step."""
    label, sep, minutes = value.rpartition(":")
    if not sep or not label.strip():
        raise argparse.ArgumentTypeError(f"expected LABEL:MINUTES, got {value!r}")
    try:
        duration = int(minutes)
    except ValueError:
        raise argparse.ArgumentTypeError(f"minutes must be a whole number, got {minutes!r}")
    return ProtocolStep(label=label.strip(), duration_minutes=duration)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="protocol-app", description="Timed protocol runner")
    p.add_argument("--config-dir", type=Path, help="directory holding settings.yaml/owners.yaml")
    p.add_argument("--db", help="SQLite database path (overrides storage.db_path)")
    p.add_argument("--owner", default="default", help="owner id (default: %(default)s)")
    p.add_argument("--log-level", help="override logging.level")
    sub = p.add_subparsers(dest="cmd", required=True)

    create = sub.add_parser("create", help="create or update a protocol")
    create.add_argument("name")
    create.add_argument("--step", dest="steps", action="append", type=parse_step,
                        required=True, help="LABEL:MINUTES, repeat in order")
    create.add_argument("--tag", dest="tags", action="append", default=[])
    create.add_argument("--description")
    create.set_defaults(func=cmd_create)

    sub.add_parser("list", help="list protocols").set_defaults(func=cmd_list)

    start = sub.add_parser("start", help="start a protocol run")
    start.add_argument("name")
    start.set_defaults(func=cmd_start)

    nxt = sub.add_parser("next", help="advance a run to its next step")
    nxt.add_argument("--run-id", help="run to advance (default: owner's active run)")
    nxt.set_defaults(func=cmd_next)

    cancel = sub.add_parser("cancel", help="cancel the active run")
    cancel.add_argument("--run-id", help="cancel this run instead of the active one")
    cancel.set_defaults(func=cmd_cancel)

    sub.add_parser("status", help="show the active run").set_defaults(func=cmd_status)

    history = sub.add_parser("history", help="show recent runs")
    history.add_argument("--name", help="only runs of this protocol")
    history.add_argument("--limit", type=int)
    history.set_defaults(func=cmd_history)

    delete = sub.add_parser("delete", help="soft-delete a protocol")
    delete.add_argument("name")
    delete.set_defaults(func=cmd_delete)

    return p


def cmd_create(engine: ProtocolRunEngine, args: argparse.Namespace) -> Any:
    definition = engine.create_protocol(
        args.owner, args.name, args.steps, tags=args.tags, description=args.description
    )
    return definition.to_dict()


def cmd_list(engine: ProtocolRunEngine, args: argparse.Namespace) -> Any:
    return [d.to_dict() for d in engine.list_protocols(args.owner)]


def cmd_start(engine: ProtocolRunEngine, args: argparse.Namespace) -> Any:
    return engine.start_run(args.owner, args.name).to_dict()


def cmd_next(engine: ProtocolRunEngine, args: argparse.Namespace) -> Any:
    run_id = args.run_id or _active_run_id(engine, args.owner)
    return engine.advance_to_next_step(run_id).to_dict()


def cmd_cancel(engine: ProtocolRunEngine, args: argparse.Namespace) -> Any:
    if args.run_id:
        return engine.cancel_run(args.run_id).to_dict()
    return engine.cancel_active_run(args.owner).to_dict()


def cmd_status(engine: ProtocolRunEngine, args: argparse.Namespace) -> Any:
    return engine.get_status(args.owner).to_dict()


def cmd_history(engine: ProtocolRunEngine, args: argparse.Namespace) -> Any:
    runs = engine.history(args.owner, protocol_name=args.name, limit=args.limit)
    return [run.to_dict() for run in runs]


def cmd_delete(engine: ProtocolRunEngine, args: argparse.Namespace) -> Any:
    definition = engine.get_protocol(args.owner, args.name)
    return {"deleted": engine.delete_protocol(args.owner, definition.id), "id": definition.id}


def _active_run_id(engine: ProtocolRunEngine, owner_id: str) -> str:
    view = engine.get_status(owner_id)
    if view.run is None:
        raise NotFoundError("No active run; pass --run-id", resource="active_run", identifier=owner_id)
    return view.run.id


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    loader = ConfigLoader.create(args.config_dir)
    overrides: dict[str, Any] = {}
    if args.db:
        overrides["storage"] = {"db_path": args.db}
    if args.log_level:
        overrides["logging"] = {"level": args.log_level}

    log_config = loader.merge_config(args.owner, overrides)["logging"]
    configure_logging(level=log_config["level"], format_json=log_config["format_json"])

    try:
        engine = ProtocolRunEngine.from_config(loader, overrides=overrides)
        output = args.func(engine, args)
    except ProtocolError as e:
        logger.warning("Command rejected", command=args.cmd, error=str(e))
        print(json.dumps({"error": type(e).__name__, "message": str(e), **e.context}, default=str))
        return 1
    except SystemFailureError as e:
        logger.error("Command failed", command=args.cmd, error=str(e))
        print(json.dumps({"error": type(e).__name__, "message": str(e)}, default=str))
        return 2

    print(json.dumps(output, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
