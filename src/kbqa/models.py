from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

# USD per 1,000 tokens
MODEL_PRICING: dict[str, dict[str, float]] = {
    "anthropic.claude-3-5-sonnet-20241022-v2:0": {"input": 0.003, "output": 0.015},
    "anthropic.claude-3-sonnet-20240229-v1:0": {"input": 0.003, "output": 0.015},
    "anthropic.claude-3-haiku-20240307-v1:0": {"input": 0.00025, "output": 0.00125},
    "amazon.titan-embed-text-v1": {"input": 0.0001, "output": 0.0},
    "default": {"input": 0.00025, "output": 0.00125},
}


class SourceLocation(BaseModel):
    """Where a retrieved chunk came from."""

    model_config = {"frozen": True}

    type: str = "UNKNOWN"  # "S3", "URI", "WEB", "UNKNOWN"
    uri: str | None = None
    bucket: str | None = None
    key: str | None = None

    @property
    def filename(self) -> str | None:
        path = self.uri or self.key
        if not path:
            return None
        return path.rstrip("/").split("/")[-1] or None


class RetrievedChunk(BaseModel):
    """One retrieval hit."""

    model_config = {"frozen": True}

    content: str | None = None
    location: SourceLocation = Field(default_factory=SourceLocation)
    similarity_score: float = 0.0
    rank: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def filename(self) -> str | None:
        return self.location.filename

    @property
    def title(self) -> str | None:
        title = self.metadata.get("title")
        return str(title) if title else None

    def catalog_keys(self) -> list[str]:
        """Names to try, in order, when matching against the document catalog."""
        return [k for k in (self.title, self.filename) if k]


class CatalogEntry(BaseModel):
    """A document in the user-facing Data Source list (1-based position)."""

    model_config = {"frozen": True}

    name: str
    position: int = Field(ge=1)


class NumberedReference(BaseModel):
    number: int
    title: str
    filename: str | None = None
    content: str | None = None
    location: SourceLocation = Field(default_factory=SourceLocation)
    metadata: dict[str, Any] = Field(default_factory=dict)


class RagResult(BaseModel):
    answer: str
    citations: list[NumberedReference] = Field(default_factory=list)
    session_id: str | None = None


class TokenUsage(BaseModel):
    input_tokens: int | None = None
    output_tokens: int | None = None


class GenerationResponse(BaseModel):
    """What a generation (or retrieve-and-generate) backend hands back."""

    text: str = ""
    usage: TokenUsage | None = None
    citations: list[Any] = Field(default_factory=list)
    session_id: str | None = None


class QueryUsageRecord(BaseModel):
    model_config = {"protected_namespaces": ()}

    model_id: str
    input_tokens: int = Field(ge=0)
    output_tokens: int = Field(ge=0)
    user_query: str
    latency_ms: int = Field(ge=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def cost(self) -> float:
        pricing = MODEL_PRICING.get(self.model_id, MODEL_PRICING["default"])
        input_cost = (self.input_tokens / 1000.0) * pricing["input"]
        output_cost = (self.output_tokens / 1000.0) * pricing["output"]
        return round(input_cost + output_cost, 6)


class QueryRequest(BaseModel):
    question: str = Field(default="", max_length=4000)
    session_id: str | None = None


class QueryResponse(BaseModel):
    answer: str
    citations: list[NumberedReference]
    session_id: str | None = None
    status: str = "success"


class ErrorResponse(BaseModel):
    message: str
    status: str = "error"
