from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator
from xml.sax.saxutils import escape

import structlog
from fastapi import Depends, FastAPI, Form
from fastapi.responses import JSONResponse, Response

from .config import configure_logging, settings
from .errors import MissingKnowledgeBaseError, ServiceError
from .models import ErrorResponse, QueryRequest, QueryResponse, RagResult
from .pipeline import QueryOrchestrator

log = structlog.get_logger()

_orchestrator: QueryOrchestrator | None = None


def get_orchestrator() -> QueryOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = QueryOrchestrator.from_settings(settings)
    return _orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    configure_logging(settings.log_level)
    if not settings.knowledge_base_id:
        log.warning("knowledge_base_not_configured")
    yield


app = FastAPI(
    title="KBQA",
    description="Knowledge-base question answering with catalog-numbered citations",
    version="0.1.0",
    lifespan=lifespan,
)

# error kind -> (HTTP status, API message, messaging-channel message)
_ERRORS: dict[str, tuple[int, str, str]] = {
    "blank_question": (
        400,
        "Question cannot be empty",
        "Please send a question (message cannot be empty).",
    ),
    "config_error": (
        500,
        "RAG service is not properly configured",
        "The query service is not properly configured.",
    ),
    "service_error": (
        502,
        "Error querying knowledge base",
        "Error querying knowledge base. Please try again later.",
    ),
    "unexpected_error": (
        500,
        "Unexpected error processing request",
        "Sorry, an unexpected error occurred.",
    ),
}


def _run_query(
    orchestrator: QueryOrchestrator,
    question: str | None,
    session_id: str | None = None,
) -> RagResult | str:
    """Run a query, returning the result or the error kind it failed with."""
    question = (question or "").strip()
    if not question:
        return "blank_question"
    try:
        return orchestrator.query(question, session_id=session_id)
    except MissingKnowledgeBaseError as exc:
        log.error("rag_config_error", error=exc.message)
        return "config_error"
    except ServiceError as exc:
        log.error("rag_service_error", stage=exc.stage, error=exc.message)
        return "service_error"
    except Exception:
        log.exception("rag_unexpected_error")
        return "unexpected_error"


def format_for_messaging(result: RagResult) -> str:
    """Plain-text rendering for SMS / WhatsApp replies."""
    text = result.answer.strip()
    names = list(dict.fromkeys(c.filename or c.title for c in result.citations))
    if text and names:
        text += f"\n\nSources: {', '.join(names)}"
    return text or "I couldn't find an answer."


@app.get("/health")
def health() -> dict[str, str]:
    status = "ready" if settings.knowledge_base_id else "not_configured"
    return {"status": status, "mode": settings.mode}


@app.post(
    "/query",
    response_model=QueryResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
def query_docs(
    req: QueryRequest,
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
):
    """Ask a question against the knowledge base."""
    outcome = _run_query(orchestrator, req.question, req.session_id)
    if isinstance(outcome, str):
        status_code, message, _ = _ERRORS[outcome]
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(message=message).model_dump(),
        )
    return QueryResponse(
        answer=outcome.answer,
        citations=outcome.citations,
        session_id=outcome.session_id,
    )


@app.post("/webhooks/messaging")
def messaging_webhook(
    Body: str = Form(default=""),
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
) -> Response:
    """Inbound SMS / WhatsApp message; replies with TwiML."""
    outcome = _run_query(orchestrator, Body)
    reply = _ERRORS[outcome][2] if isinstance(outcome, str) else format_for_messaging(outcome)
    twiml = (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f"<Response><Message>{escape(reply)}</Message></Response>"
    )
    return Response(content=twiml, media_type="application/xml")


def create_app() -> FastAPI:
    """Factory for testing."""
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.kbqa.api:app",
        host=settings.host,
        port=settings.port,
        reload=True,
    )
