"""Command line entry point: run one completion for a file position."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.ai_types import CompletionResult, HeartbeatProtocol
from .ai.checkpoints import CHECKPOINT_MARKER
from .ai.context.truncation import TruncationBudget
from .ai.context.window_cache import PromptWindowCache
from .ai.engine import CompletionEngine, DocumentContext, PromptBundle
from .editor.document import DocumentSnapshot
from .services.keepalive import KeepaliveFile, NullHeartbeat
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)

_SYSTEM_PROMPT = (
    "You are a code completion engine. Rewrite the lines between the start and "
    "stop markers so the code continues naturally from the cursor. Reply with "
    "code only."
)


def configure_logging(debug: bool = False, *, payloads: bool = False, force: bool = False) -> None:
    """Configure logging for the command line.

    ``payloads`` mirrors the ``debug_logging`` setting: request payloads go to
    the payload log and the HTTP transport loggers stop being quieted.
    """

    level = logging.DEBUG if debug or payloads else logging.INFO
    logging_utils.setup_logging(level, log_payloads=payloads, force=force)
    _LOGGER.debug("Logging configured (level=%s, payloads=%s)", logging.getLevelName(level), payloads)


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


def render_prompt(context: DocumentContext) -> PromptBundle:
    """Default prompt: header, the document with the marked window, then the cursor hint.

    Checkpoints follow the header and the document block. The cursor hint
    changes on every line move, so it stays in the live final segment and the
    primed text is unchanged while the cached window is reused.
    """

    snapshot = context.snapshot
    language = snapshot.language_id or ""
    header = f"Document: {snapshot.doc_id}\n"
    document_block = f"```{language}\n{context.window_text}\n```"
    cursor_hint = f"\nCursor line: {snapshot.cursor_line + 1}\n"
    return PromptBundle(
        system=_SYSTEM_PROMPT,
        user=f"{header}{CHECKPOINT_MARKER}{document_block}{CHECKPOINT_MARKER}{cursor_hint}",
        document_block=document_block,
    )


def build_engine(settings: Settings, *, heartbeat: HeartbeatProtocol | None = None) -> CompletionEngine:
    """Create a :class:`CompletionEngine` wired from ``settings``."""

    if heartbeat is None:
        heartbeat = (
            KeepaliveFile(Path(settings.keepalive_path).expanduser())
            if settings.keepalive_path
            else NullHeartbeat()
        )
    return CompletionEngine(
        settings.to_client_settings(),
        window_cache=PromptWindowCache(settings.window_cache_config()),
        budget=TruncationBudget(settings.truncation_config()),
        heartbeat=heartbeat,
        reserved_tokens=settings.reserved_tokens,
    )


async def run_completion(
    settings: Settings,
    file_path: Path,
    line: int,
    character: int = 0,
    *,
    wait_ready: bool = False,
    engine: CompletionEngine | None = None,
) -> CompletionResult:
    """Read ``file_path`` and complete at ``line``/``character`` (0-based)."""

    text = file_path.read_text(encoding="utf-8")
    snapshot = DocumentSnapshot.capture(
        file_path.resolve().as_uri(),
        text,
        line,
        character,
        language_id=file_path.suffix.lstrip("."),
        window=settings.window_settings(),
    )
    active = engine or build_engine(settings)
    try:
        if wait_ready and not await active.client.wait_until_active():
            _LOGGER.warning("Continuing although %s is not answering", settings.base_url)
        return await active.complete(snapshot, render_prompt)
    finally:
        if engine is None:
            await active.aclose()


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the `tabpilot` console script."""

    args = _parse_cli_args(argv)
    debug = _env_flag("TABPILOT_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("TABPILOT_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return 0

    if settings.debug_logging:
        configure_logging(debug, payloads=True, force=True)

    if args.list_models:
        models = asyncio.run(_list_models(build_engine(settings)))
        for model in models:
            print(model)
        return 0 if models else 1

    if args.file is None or args.line is None:
        print("--file and --line are required to request a completion", file=sys.stderr)
        return 2

    try:
        result = asyncio.run(
            run_completion(
                settings,
                Path(args.file).expanduser(),
                max(0, args.line - 1),
                max(0, args.character - 1),
                wait_ready=args.wait_ready,
            )
        )
    except (OSError, UnicodeDecodeError) as exc:
        print(f"Unable to read {args.file}: {exc}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Completion interrupted by user.")
        return 130

    if args.json:
        json.dump(result.to_dict(), sys.stdout, indent=2)
        sys.stdout.write("\n")
    else:
        sys.stdout.write(result.text)
        if result.text and not result.text.endswith("\n"):
            sys.stdout.write("\n")
        _LOGGER.info("Completion finished: %s", result.reason.value)
    return 0 if result.ok else 1


async def _list_models(engine: CompletionEngine) -> list[str]:
    try:
        return await engine.client.list_models()
    finally:
        await engine.aclose()


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tabpilot",
        add_help=True,
        description="Request a multi-line code completion from an OpenAI-compatible server.",
    )
    parser.add_argument("--file", metavar="PATH", help="Document to complete.")
    parser.add_argument("--line", type=int, metavar="N", help="1-based cursor line.")
    parser.add_argument(
        "--character",
        type=int,
        default=1,
        metavar="N",
        help="1-based cursor column (default: 1).",
    )
    parser.add_argument(
        "--wait-ready",
        action="store_true",
        help="Poll the server until it answers before sending the request.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the completion result as JSON.",
    )
    parser.add_argument(
        "--list-models",
        action="store_true",
        help="Print the models served by the endpoint and exit.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.tabpilot/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = type_hints.get(key, fields[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if normalized.lower() in {"none", "null"} and _is_optional(annotation):
        return None
    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if target is dict:
        try:
            return json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin is dict:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return args[0]


def _is_optional(annotation: Any) -> bool:
    return type(None) in get_args(annotation)


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(settings.api_key)
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("TABPILOT_"))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
