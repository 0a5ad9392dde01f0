from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Literal

import structlog
from dotenv import load_dotenv
from pydantic import AliasChoices, BaseModel, Field
from pydantic_settings import BaseSettings

# Load .env into os.environ so non-prefixed vars (AWS_*, GEMINI_API_KEY) are available
load_dotenv()

DEFAULT_MODEL_ID = "anthropic.claude-3-haiku-20240307-v1:0"


class RetrievalConfig(BaseModel):
    model_config = {"frozen": True}

    top_k: int = Field(default=20, ge=1, le=100)
    search_mode: Literal["HYBRID", "SEMANTIC"] = "HYBRID"
    reranking_model_id: str | None = None
    metadata_filter: dict[str, Any] | None = None


class GenerationConfig(BaseModel):
    model_config = {"frozen": True}

    temperature: float = Field(default=0.7, ge=0.0, le=1.0)
    top_p: float = Field(default=0.9, ge=0.0, le=1.0)
    max_tokens: int = Field(default=2000, gt=0)
    stop_sequences: list[str] = Field(default_factory=list)
    prompt_template: str | None = None
    performance_mode: Literal["standard", "optimized"] = "standard"


class OrchestrationConfig(BaseModel):
    model_config = {"frozen": True}

    mode: Literal["direct", "combined"] = "direct"
    prompt_template: str | None = None
    max_context_chars: int = Field(default=50_000, gt=0)
    include_unmatched_references: bool = False


class QueryConfig(BaseModel):
    """Per-query knobs; callers may deep-merge overrides into these."""

    model_config = {"frozen": True}

    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    orchestration: OrchestrationConfig = Field(default_factory=OrchestrationConfig)


class RagConfig(BaseModel):
    """Provider configuration resolved once and handed to the orchestrator."""

    model_config = {"frozen": True, "protected_namespaces": ()}

    knowledge_base_id: str | None = None
    region: str = "us-east-1"
    model_id: str = DEFAULT_MODEL_ID
    # Direct-mode generator model when it is not the Bedrock model above
    generation_model_id: str | None = None
    query: QueryConfig = Field(default_factory=QueryConfig)

    @property
    def foundation_model_id(self) -> str:
        # Cross-region inference profile prefix is not valid inside a foundation-model ARN
        return self.model_id.removeprefix("us.")

    @property
    def model_arn(self) -> str:
        return f"arn:aws:bedrock:{self.region}::foundation-model/{self.foundation_model_id}"

    @property
    def generator_model_id(self) -> str:
        return self.generation_model_id or self.model_id


class Settings(BaseSettings):
    model_config = {
        "env_prefix": "KBQA_",
        "env_file": ".env",
        "extra": "ignore",
        "populate_by_name": True,
        "protected_namespaces": (),
    }

    # Knowledge base / models
    knowledge_base_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("KBQA_KNOWLEDGE_BASE_ID", "BEDROCK_KNOWLEDGE_BASE_ID"),
    )
    aws_region: str = Field(
        default="us-east-1",
        validation_alias=AliasChoices("KBQA_AWS_REGION", "AWS_REGION"),
    )
    model_id: str = Field(
        default=DEFAULT_MODEL_ID,
        validation_alias=AliasChoices("KBQA_MODEL_ID", "BEDROCK_MODEL_ID"),
    )
    generation_backend: Literal["bedrock", "gemini"] = "bedrock"
    gemini_model: str = "gemini-2.5-flash"

    # Credentials (falls through to the default boto3 chain when unset)
    aws_access_key_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("KBQA_AWS_ACCESS_KEY_ID", "AWS_ACCESS_KEY_ID"),
    )
    aws_secret_access_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("KBQA_AWS_SECRET_ACCESS_KEY", "AWS_SECRET_ACCESS_KEY"),
    )
    bedrock_bearer_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "KBQA_BEDROCK_BEARER_TOKEN", "AWS_BEARER_TOKEN_BEDROCK", "AWS_BEDROCK_BEARER_TOKEN"
        ),
    )
    ca_bundle: str | None = Field(
        default=None,
        validation_alias=AliasChoices("KBQA_CA_BUNDLE", "AWS_CA_BUNDLE", "SSL_CERT_FILE"),
    )

    # Retrieval
    top_k: int = 20
    search_mode: Literal["HYBRID", "SEMANTIC"] = "HYBRID"
    reranking_model_id: str | None = None

    # Generation
    temperature: float = 0.7
    top_p: float = 0.9
    max_tokens: int = 2000
    performance_mode: Literal["standard", "optimized"] = "standard"

    # Orchestration
    mode: Literal["direct", "combined"] = "direct"
    max_context_chars: int = 50_000
    include_unmatched_references: bool = False

    # Document catalog (the "Data Source" list)
    catalog_bucket: str | None = Field(
        default=None,
        validation_alias=AliasChoices("KBQA_CATALOG_BUCKET", "KNOWLEDGE_BASE_S3_BUCKET"),
    )
    catalog_min_size_bytes: int = 1024

    # Paths
    usage_log_path: Path = Path("./data/usage.jsonl")
    metrics_path: Path = Path("./data/usage_metrics.json")

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @property
    def gemini_api_key(self) -> str:
        return os.environ.get("GEMINI_API_KEY", "")

    @property
    def ca_bundle_path(self) -> str | None:
        if self.ca_bundle and Path(self.ca_bundle).exists():
            return self.ca_bundle
        return None

    def rag_config(self) -> RagConfig:
        return RagConfig(
            knowledge_base_id=self.knowledge_base_id or None,
            region=self.aws_region,
            model_id=self.model_id,
            generation_model_id=self.gemini_model if self.generation_backend == "gemini" else None,
            query=QueryConfig(
                retrieval=RetrievalConfig(
                    top_k=self.top_k,
                    search_mode=self.search_mode,
                    reranking_model_id=self.reranking_model_id,
                ),
                generation=GenerationConfig(
                    temperature=self.temperature,
                    top_p=self.top_p,
                    max_tokens=self.max_tokens,
                    performance_mode=self.performance_mode,
                ),
                orchestration=OrchestrationConfig(
                    mode=self.mode,
                    max_context_chars=self.max_context_chars,
                    include_unmatched_references=self.include_unmatched_references,
                ),
            ),
        )


def configure_logging(level: str = "INFO") -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
    )


settings = Settings()
