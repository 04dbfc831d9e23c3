from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .account_list import list_accounts
from .config import Settings, find_config
from .context import RunContext
from .errors import FusionError
from .models import AccountOutput, AccountSchema, SchemaAttribute
from .platform import InMemoryPlatform
from .state import PROCESS_LOCK, RESET, InMemoryStateStore, SqliteStateStore, StateStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(levelname).1s | %(name)s | %(message)s"

C_RESET = "\033[0m"
LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",  # Cyan
    logging.INFO: "\033[37m",  # Light gray
    logging.WARNING: "\033[33m",  # Yellow
    logging.ERROR: "\033[31m",  # Red
    logging.CRITICAL: "\033[35m",  # Magenta
}


class ColorFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = LEVEL_COLORS.get(record.levelno)
        if not color:
            return message
        return f"{color}{message}{C_RESET}"


class WarningBufferHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__(level=logging.WARNING)
        self.records: list[str] = []

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
        except Exception:  # pragma: no cover
            msg = record.getMessage()
        self.records.append(msg)


def configure_logging(level_name: str, *, color: bool = True) -> WarningBufferHandler:
    log_level = getattr(logging, level_name.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(log_level)

    handler = logging.StreamHandler()
    handler.setFormatter(ColorFormatter(LOG_FORMAT) if color else logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(handler)

    warn_buffer = WarningBufferHandler()
    warn_buffer.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(warn_buffer)
    return warn_buffer


def load_fixture(path: Path) -> Dict[str, Any]:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise FusionError(f"Unable to read fixture {path}: {exc}") from exc


def schema_from_fixture(data: Dict[str, Any], settings: Settings) -> Optional[AccountSchema]:
    raw = data.get("schema")
    if not raw:
        return None
    return AccountSchema(
        identity_attribute=raw.get("identityAttribute", settings.processing.identity_attribute),
        display_attribute=raw.get("displayAttribute", settings.processing.display_attribute),
        attributes=[
            SchemaAttribute(
                name=item["name"],
                type=item.get("type", "string"),
                multi=bool(item.get("multi", False)),
                description=item.get("description", ""),
            )
            for item in raw.get("attributes", [])
        ],
    )


def open_state(settings: Settings) -> StateStore:
    if settings.state.path is None:
        logger.warning("No state.path configured; state will not survive this process")
        return InMemoryStateStore()
    return SqliteStateStore(settings.state.path)


def build_context(
    settings: Settings, platform: InMemoryPlatform, state: StateStore, *, report: bool = False
) -> RunContext:
    return RunContext.create(
        settings,
        accounts=platform,
        identities=platform,
        forms=platform,
        messenger=platform,
        state=state,
        report=report,
        keepalive=lambda message: logger.debug("keep-alive: %s", message),
    )


def write_outputs(outputs: List[AccountOutput], destination: Optional[Path]) -> None:
    lines = [json.dumps(output.to_record(), sort_keys=True, default=str) for output in outputs]
    if destination is None:
        for line in lines:
            print(line)
        return
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
    logger.info("Wrote %d account(s) to %s", len(lines), destination)


def _run_list(settings: Settings, state: StateStore, args: argparse.Namespace, *, report: bool) -> None:
    fixture = load_fixture(args.fixtures)
    platform = InMemoryPlatform.from_fixture(fixture)
    logger.info("Loaded fixture: %s", platform.describe())
    context = build_context(settings, platform, state, report=report)
    result = asyncio.run(list_accounts(context, schema_from_fixture(fixture, settings)))
    if report:
        assert context.report is not None
        print(context.report.to_json() if args.json else context.report.render_text())
        return
    if result.reset:
        print("Reset complete; no accounts emitted.")
        return
    write_outputs(result.outputs, args.output)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Account-to-identity fusion")
    parser.add_argument("--config", type=Path, help="Path to config.yaml")
    parser.add_argument("--log-level", default="INFO", help="Python logging level")
    parser.add_argument("--no-color", action="store_true", help="Disable coloured log output")

    subparsers = parser.add_subparsers(dest="command", required=True)
    list_parser = subparsers.add_parser("list-accounts", help="Run a full reconciliation and emit fusion accounts")
    list_parser.add_argument("--fixtures", type=Path, required=True, help="JSON platform fixture")
    list_parser.add_argument("--output", type=Path, default=None, help="Write accounts to this file (JSON Lines)")
    report_parser = subparsers.add_parser("report", help="Run a reconciliation and print the fusion report")
    report_parser.add_argument("--fixtures", type=Path, required=True, help="JSON platform fixture")
    report_parser.add_argument("--json", action="store_true", help="Emit machine-readable JSON to stdout")
    subparsers.add_parser("reset", help="Request a reset on the next run")
    subparsers.add_parser("unlock", help="Release a stale process lock")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    warn_buffer = configure_logging(args.log_level, color=not args.no_color)
    try:
        settings = Settings.load(find_config(args.config))
    except FusionError as exc:
        logger.error("%s", exc)
        raise SystemExit(2) from exc

    state = open_state(settings)
    fusion_source_id = settings.platform.fusion_source_id
    try:
        match args.command:
            case "list-accounts":
                _run_list(settings, state, args, report=False)
            case "report":
                _run_list(settings, state, args, report=True)
            case "reset":
                state.patch(fusion_source_id, [{"op": "add", "path": f"/{RESET}", "value": True}])
                print(f"Reset requested for {fusion_source_id}.")
            case "unlock":
                state.patch(fusion_source_id, [{"op": "add", "path": f"/{PROCESS_LOCK}", "value": False}])
                print(f"Process lock released for {fusion_source_id}.")
            case _:
                parser.error("Unknown command")
    except FusionError as exc:
        logger.error("%s", exc)
        raise SystemExit(1) from exc
    finally:
        state.close()
        if warn_buffer.records:
            print("\n\033[33mWarnings/Errors summary:\033[0m")
            for line in warn_buffer.records:
                print(f" - {line}")
