"""Exceptions raised by the query pipeline.

Only ``MissingKnowledgeBaseError`` and ``ServiceError`` (and its
subclasses) escape ``QueryOrchestrator.query``. Citation and recording
failures are caught inside the pipeline and degrade the result instead.
"""

from __future__ import annotations


class KBQAError(RuntimeError):
    """Base class for all pipeline errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class MissingKnowledgeBaseError(KBQAError):
    """Raised when no knowledge base id is configured."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message
            or "Knowledge Base ID not configured. Set KBQA_KNOWLEDGE_BASE_ID "
            "(or BEDROCK_KNOWLEDGE_BASE_ID)."
        )


class ServiceError(KBQAError):
    """A retrieval or generation backend failed."""

    def __init__(self, stage: str, cause: BaseException | str) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage.replace('_', ' ').capitalize()} failed: {cause}")


class BedrockServiceError(ServiceError):
    """A Bedrock API call failed (auth, throttling, timeout, validation)."""


class CitationProcessingError(KBQAError):
    """Citation extraction or renumbering failed. Never fatal."""


class RecordingError(KBQAError):
    """Persisting a usage record or refreshing metrics failed. Never fatal."""
