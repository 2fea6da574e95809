"""Command-line entry point: stream one chat turn to stdout."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import signal
import sys
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.orchestration import (
    AbortSignal,
    ChatMessage,
    ChatSession,
    ChatStreamError,
    CommandDispatcher,
    ContextAugmenter,
    ContextItemSink,
    HttpRetriever,
    LegacyCommand,
    RagContextProvider,
    StreamOrchestrator,
    StreamRequest,
    StreamState,
    build_rag_command,
)
from .services.config import SettingsConfigProvider
from .services.free_trial import FreeTrialMonitor, HttpFreeTrialClient
from .services.settings import Settings, SettingsStore, redact_secret
from .services.speech import NullSpeechSynthesizer, SpeechSynthesizer, SubprocessSpeechSynthesizer, default_speech_command
from .services.telemetry import TelemetrySink, build_telemetry_sink
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_LOGGER = logging.getLogger(__name__)
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure structured logging for the application."""

    log_path = logging_utils.setup_logging(debug=debug, force=force)
    _LOGGER.debug("Logging configured (debug=%s, file=%s)", debug, log_path)


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except Exception as exc:  # pragma: no cover - unreadable settings
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def build_orchestrator(
    settings: Settings,
    config_provider: SettingsConfigProvider,
    *,
    telemetry: TelemetrySink | None = None,
    speech: SpeechSynthesizer | None = None,
) -> StreamOrchestrator:
    """Wire the orchestrator and its collaborators from ``settings``."""

    retriever = HttpRetriever(settings.rag_api_base_url)
    rag_provider = RagContextProvider(
        retriever,
        api_base_url=settings.rag_api_base_url,
        default_groups=settings.rag_default_groups,
        n_retrieve=settings.rag_n_retrieve,
        n_final=settings.rag_n_final,
    )
    free_trial: FreeTrialMonitor | None = None
    if settings.free_trial_status_url:
        free_trial = FreeTrialMonitor(
            HttpFreeTrialClient(settings.free_trial_status_url, api_key=settings.api_key or None),
            _notify_free_trial_exceeded,
        )
    return StreamOrchestrator(
        config_provider,
        telemetry=telemetry if telemetry is not None else build_telemetry_sink(settings),
        speech=speech if speech is not None else _build_speech(settings),
        free_trial=free_trial,
        augmenter=ContextAugmenter(
            retriever,
            n_retrieve=settings.rag_n_retrieve,
            n_final=settings.rag_n_final,
        ),
        dispatcher=CommandDispatcher([build_rag_command(rag_provider)]),
    )


async def run_turn(
    orchestrator: StreamOrchestrator,
    prompt: str,
    *,
    system_prompt: str | None = None,
    group_name: str | None = None,
    model: str | None = None,
    command: str | None = None,
    abort_signal: AbortSignal | None = None,
    stream: TextIO | None = None,
) -> ChatSession:
    """Stream one turn for ``prompt`` to ``stream`` and return the resulting session."""

    destination = stream or sys.stdout
    session = ChatSession()
    if system_prompt:
        session.append(ChatMessage.system(system_prompt))
    user_index = session.append(ChatMessage.user(prompt))

    completion_options: Dict[str, Any] = {}
    if group_name:
        completion_options["group_name"] = group_name
    legacy_command = None
    if command:
        legacy_command = LegacyCommand(name=command, input=prompt, history_index=user_index)

    sink = ContextItemSink()
    request = StreamRequest(
        conversation=session.messages(),
        completion_options=completion_options,
        model=model,
        legacy_command=legacy_command,
    )
    turn = orchestrator.run(session, request, abort_signal, context_sink=sink)
    parts: list[str] = []
    with logging_utils.session_context(session.session_id):
        async for chunk in turn:
            if chunk.text:
                parts.append(chunk.text)
                destination.write(chunk.text)
                destination.flush()
    destination.write("\n")
    sink.apply_to(session)
    if parts:
        session.append(ChatMessage.assistant("".join(parts)))
    if turn.state is StreamState.CANCELLED:
        _LOGGER.info("Turn cancelled before completion")
    await orchestrator.wait_for_side_effects()
    return session


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the `chatstream` console script."""

    args = _parse_cli_args(argv)

    debug = _env_flag("CHATSTREAM_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("CHATSTREAM_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    overrides_mapping: Dict[str, Any] | None = cli_overrides or None
    settings = load_settings(resolved_path, store=settings_store, overrides=overrides_mapping)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    if args.list_groups:
        asyncio.run(_print_groups(settings))
        return

    prompt = " ".join(args.prompt).strip()
    if prompt == "-" or (not prompt and not sys.stdin.isatty()):
        prompt = sys.stdin.read().strip()
    if not prompt:
        print("A prompt is required.", file=sys.stderr)
        raise SystemExit(2)

    config_provider = SettingsConfigProvider(settings)
    orchestrator = build_orchestrator(settings, config_provider)
    try:
        asyncio.run(
            _run_cli_turn(
                orchestrator,
                config_provider,
                prompt,
                system_prompt=args.system,
                group_name=args.group,
                model=args.model,
                command=args.command,
            )
        )
    except ChatStreamError as exc:
        _LOGGER.error("Turn failed: %s", exc)
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc


async def _run_cli_turn(
    orchestrator: StreamOrchestrator,
    config_provider: SettingsConfigProvider,
    prompt: str,
    **kwargs: Any,
) -> None:
    abort_signal = AbortSignal()
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, abort_signal.abort, "interrupted")
    try:
        await run_turn(orchestrator, prompt, abort_signal=abort_signal, **kwargs)
    finally:
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.remove_signal_handler(signal.SIGINT)
        await config_provider.aclose()


async def _print_groups(settings: Settings, *, stream: TextIO | None = None) -> None:
    destination = stream or sys.stdout
    provider = RagContextProvider(
        HttpRetriever(settings.rag_api_base_url),
        api_base_url=settings.rag_api_base_url,
        default_groups=settings.rag_default_groups,
    )
    for name in await provider.load_group_names():
        destination.write(f"{name}\n")


def _build_speech(settings: Settings) -> SpeechSynthesizer:
    if not settings.read_response_tts:
        return NullSpeechSynthesizer()
    command = default_speech_command()
    if command is None:
        _LOGGER.warning("Read-aloud enabled but no speech command is available")
        return NullSpeechSynthesizer()
    return SubprocessSpeechSynthesizer(command)


def _notify_free_trial_exceeded() -> None:
    print(
        "Free trial limit reached. Configure your own API key to keep chatting.",
        file=sys.stderr,
    )


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="chatstream",
        add_help=True,
        description="Stream a chat reply, optionally grounded in a RAG group or a slash command.",
    )
    parser.add_argument("prompt", nargs="*", help="Prompt text; '-' reads it from stdin.")
    parser.add_argument("--group", metavar="NAME", help="RAG group whose context augments the turn.")
    parser.add_argument("--model", metavar="TITLE", help="Title of the configured model to use.")
    parser.add_argument("--command", metavar="NAME", help="Run a slash command (e.g. 'rag') instead of the model.")
    parser.add_argument("--system", metavar="TEXT", help="Optional system prompt.")
    parser.add_argument(
        "--list-groups",
        action="store_true",
        help="Print the RAG groups known to the retrieval service and exit.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.chatstream/settings.json path.",
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

    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if target is type(None) or normalized.lower() in {"none", "null"}:
        return None
    if is_dataclass(target):
        try:
            payload = json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dataclass overrides must be valid JSON") from exc
        if isinstance(target, type):
            return target(**payload)
        raise ValueError("Dataclass override target is not instantiable")
    if target is list:
        try:
            return json.loads(normalized or "[]")
        except json.JSONDecodeError as exc:
            raise ValueError("List overrides must be valid JSON arrays") from exc
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
    if origin in {list, dict}:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return args[0]


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
    payload["api_key"] = redact_secret(payload.get("api_key", ""))
    for entry in payload.get("models") or []:
        entry["api_key"] = redact_secret(entry.get("api_key", ""))
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    output = {"settings": payload, "meta": metadata}
    json.dump(output, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("CHATSTREAM_"))


if __name__ == "__main__":  # pragma: no cover - manual invocation
    main()
