import logging
from typing import Any, Callable, TypeVar

from fastapi import FastAPI, HTTPException
from fastapi.responses import PlainTextResponse

from tutor.api.tutor import documents_router, students_router
from tutor.embeddings import get_embedding_model
from tutor.llm_provider import get_generator_status
from tutor.logging_config import configure_logging
from tutor.telemetry import emit_app_startup_event
from tutor.vectorstore import VectorStoreUnavailableError, get_vector_index

configure_logging()

LOGGER = logging.getLogger(__name__)

app = FastAPI(title="Curriculum Tutor API")
app.include_router(documents_router)
app.include_router(students_router)


@app.on_event("startup")
async def _startup() -> None:
    emit_app_startup_event()


T = TypeVar("T")


def _resolve_dependency(factory: Callable[[], T]) -> T:
    """Resolve a dependency while respecting FastAPI overrides."""

    override: Any | None = app.dependency_overrides.get(factory)
    resolved: Any = override if override is not None else factory
    return resolved() if callable(resolved) else resolved


@app.get("/", response_class=PlainTextResponse)
def read_root() -> str:
    """Healthcheck endpoint for the service."""
    return "ok"


@app.get("/healthz", response_class=PlainTextResponse)
def healthcheck() -> str:
    """Liveness probe used by container orchestrators."""
    return "ok"


@app.get("/readyz", response_class=PlainTextResponse)
def readiness_probe() -> str:
    """Readiness probe that ensures the embedder and the index respond."""

    errors: list[str] = []

    try:
        embedding_model = _resolve_dependency(get_embedding_model)
        embedding_model.embed_texts(["__readyz__"])
    except Exception as exc:  # pragma: no cover - depends on runtime
        errors.append(f"embedding_model_unavailable: {exc}")

    try:
        index = _resolve_dependency(get_vector_index)
        index.count()
    except VectorStoreUnavailableError as exc:
        errors.append(f"vector_store_unavailable: {exc}")

    if errors:
        raise HTTPException(status_code=503, detail="; ".join(errors))
    return "ok"


@app.get("/healthz/generator")
def generator_healthcheck() -> dict[str, object]:
    """Expose whether a real text generator is configured."""

    status = get_generator_status()
    payload: dict[str, object] = {
        "available": status.available,
        "model_name": status.model_name,
        "endpoint": status.endpoint,
    }
    if status.error:
        payload["reason"] = status.error
    return payload
