"""Centralised observability helpers for structured lifecycle logging."""

from __future__ import annotations
import logging
import os
import platform
import subprocess
import sys
import time
import traceback
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional


LOGGER = logging.getLogger("tutor.telemetry")

_ENV_KEYS_TO_LOG: tuple[str, ...] = (
    "EMBEDDING_BACKEND",
    "EMBEDDING_MODEL_PATH",
    "EMBEDDING_DIMENSION",
    "EMBEDDING_DEVICE",
    "VECTOR_STORE",
    "VECTOR_PERSIST_DIR",
    "VECTOR_COLLECTION",
    "VERSION_STORE_PATH",
    "SIMILARITY_THRESHOLD",
    "CHAPTER_PRIORITY_MARGIN",
    "GENERATOR_URL",
    "GENERATOR_MODEL",
    "GENERATOR_TIMEOUT",
    "LLM_MAX_TOKENS",
    "LLM_TEMPERATURE",
)


def _run_command(command: list[str], *, timeout: float = 5.0) -> tuple[int, str, str]:
    try:
        completed = subprocess.run(
            command,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except Exception as error:  # pragma: no cover - depends on runtime
        return 1, "", str(error)
    stdout = completed.stdout.strip()
    stderr = completed.stderr.strip()
    return completed.returncode, stdout, stderr


def _format_exception(error: BaseException) -> str:
    return "".join(traceback.format_exception(error.__class__, error, error.__traceback__))


def log_event(
    logger: Optional[logging.Logger],
    step: str,
    *,
    level: str = "info",
    req_id: str | None = None,
    session_id: str | None = None,
    document_id: str | None = None,
    duration_ms: float | None = None,
    exc: BaseException | str | None = None,
    details: dict[str, Any] | None = None,
    module: str | None = None,
    **payload: Any,
) -> None:
    """Emit a structured log event with the agreed-upon schema."""

    logger = logger or LOGGER
    event: dict[str, Any] = {"step": step, "module": module or logger.name}
    if req_id:
        event["req_id"] = req_id
    if session_id:
        event["session_id"] = session_id
    if document_id:
        event["document_id"] = document_id
    if duration_ms is not None:
        event["duration_ms"] = round(duration_ms, 3)
    if details is not None:
        event["details"] = details
    event.update(payload)

    exc_info = None
    if exc is not None:
        if isinstance(exc, BaseException):
            event["exc"] = _format_exception(exc)
            exc_info = (exc.__class__, exc, exc.__traceback__)
        else:
            event["exc"] = str(exc)

    log_method = getattr(logger, level.lower(), logger.info)
    log_method(event, exc_info=exc_info)


def emit_app_startup_event() -> None:
    env_values = {key: os.getenv(key) for key in _ENV_KEYS_TO_LOG if os.getenv(key) is not None}
    details = {
        "cwd": str(Path.cwd()),
        "commit": _resolve_git_commit(),
        "env": env_values,
        "python": sys.version.split()[0],
        "platform": platform.platform(),
    }
    log_event(LOGGER, "app.startup", details=details)


def emit_embeddings_event(
    *, model: str, count: int, duration_ms: float, errors: list[str] | None = None
) -> None:
    details = {
        "model": model,
        "count": count,
        "duration_ms": round(duration_ms, 3),
        "errors": errors or [],
        "per_item_ms": round(duration_ms / count, 3) if count else None,
    }
    log_event(LOGGER, "embeddings.compute", details=details)


def emit_question_cache_event(*, hit: bool, stale: bool = False, size: int) -> None:
    details = {"hit": hit, "stale": stale, "size": size}
    log_event(LOGGER, "embeddings.question_cache", level="debug", details=details)


def emit_vectorstore_event(
    step: str,
    *,
    collection: str,
    count: int,
    backend: str,
    error: BaseException | None = None,
) -> None:
    details = {
        "collection": collection,
        "count": count,
        "backend": backend,
    }
    level = "error" if error else "info"
    log_event(LOGGER, step, level=level, details=details, exc=error)


def emit_retriever_event(
    *,
    chapter_id: str,
    top_k: int,
    candidates: int,
    below_threshold: int,
    results: list[dict[str, Any]],
    duration_ms: float,
) -> None:
    details = {
        "chapter_id": chapter_id,
        "top_k": top_k,
        "candidates": candidates,
        "below_threshold": below_threshold,
        "results": results,
    }
    log_event(LOGGER, "retriever.search", duration_ms=duration_ms, details=details)


def emit_prompt_event(
    *,
    system_prompt: str,
    sources: Iterable[str],
    context_chars: int,
    history_turns: int,
) -> None:
    details = {
        "system_prompt_preview": system_prompt[:120],
        "sources": list(sources),
        "context_chars": context_chars,
        "history_turns": history_turns,
    }
    log_event(LOGGER, "prompt.compose", details=details)


def emit_inference_request(
    *,
    req_id: str,
    session_id: str | None,
    prompt_preview: str,
    prompt_len: int,
    temperature: float,
    max_tokens: int | None,
    attempt: int,
    sources: Iterable[str],
) -> None:
    details = {
        "prompt_preview": prompt_preview[:120],
        "prompt_len": prompt_len,
        "temperature": temperature,
        "max_tokens": max_tokens,
        "attempt": attempt,
        "sources": list(sources),
    }
    log_event(LOGGER, "inference.request", req_id=req_id, session_id=session_id, details=details)


def emit_inference_result(
    *,
    req_id: str,
    session_id: str | None,
    duration_ms: float,
    model_used: str,
    answer_preview: str,
    fallback: bool,
    grounded: bool,
    citations: int,
) -> None:
    details = {
        "model_used": model_used,
        "answer_preview": answer_preview[:120],
        "fallback": fallback,
        "grounded": grounded,
        "citations": citations,
    }
    log_event(
        LOGGER,
        "inference.result",
        req_id=req_id,
        session_id=session_id,
        duration_ms=duration_ms,
        details=details,
    )


def emit_citation_event(
    *, req_id: str, session_id: str | None, stripped: list[str], accepted: int
) -> None:
    details = {"stripped": stripped, "accepted": accepted}
    level = "warning" if stripped else "info"
    log_event(
        LOGGER,
        "answer.ungrounded_citation" if stripped else "answer.citations",
        level=level,
        req_id=req_id,
        session_id=session_id,
        details=details,
    )


def emit_ingest_event(
    step: str,
    *,
    document_id: str,
    version_number: int | None = None,
    duration_ms: float | None = None,
    units: int | None = None,
    added: int | None = None,
    changed: int | None = None,
    removed: int | None = None,
    unchanged: int | None = None,
    embedded: int | None = None,
) -> None:
    details = {
        "version_number": version_number,
        "duration_ms": duration_ms,
        "units": units,
        "added": added,
        "changed": changed,
        "removed": removed,
        "unchanged": unchanged,
        "embedded": embedded,
    }
    log_event(LOGGER, step, document_id=document_id, details=details)


def emit_ingest_state(*, document_id: str, previous: str, state: str) -> None:
    details = {"from": previous, "to": state}
    log_event(LOGGER, "ingest.state", level="debug", document_id=document_id, details=details)


def emit_exception(
    *,
    module: str,
    error: BaseException,
    req_id: str | None = None,
    session_id: str | None = None,
    document_id: str | None = None,
    suggestion: str | None = None,
) -> None:
    details = {"error": type(error).__name__}
    if suggestion:
        details["suggestion"] = suggestion
    log_event(
        LOGGER,
        "exception",
        level="error",
        req_id=req_id,
        session_id=session_id,
        document_id=document_id,
        details=details,
        exc=error,
        module=module,
    )


@contextmanager
def traced_duration(step: str, *, logger: Optional[logging.Logger] = None, **fields: Any) -> Iterator[None]:
    start = time.perf_counter()
    log_event(logger or LOGGER, f"{step}.start", level="debug", details=fields)
    try:
        yield
    except Exception as error:
        log_event(logger or LOGGER, f"{step}.error", level="error", details=fields, exc=error)
        raise
    finally:
        end = time.perf_counter()
        log_event(
            logger or LOGGER,
            f"{step}.complete",
            duration_ms=(end - start) * 1000.0,
            details=fields,
        )


def _resolve_git_commit() -> Optional[str]:
    returncode, stdout, _ = _run_command(["git", "rev-parse", "HEAD"])
    if returncode != 0:
        return None
    return stdout.strip() or None


__all__ = [
    "emit_app_startup_event",
    "emit_citation_event",
    "emit_embeddings_event",
    "emit_exception",
    "emit_inference_request",
    "emit_inference_result",
    "emit_ingest_event",
    "emit_ingest_state",
    "emit_prompt_event",
    "emit_question_cache_event",
    "emit_retriever_event",
    "emit_vectorstore_event",
    "log_event",
    "traced_duration",
]
