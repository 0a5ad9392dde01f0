from __future__ import annotations

import time
from typing import Any, Callable, Mapping, Protocol, Sequence, TypeVar

import structlog

from . import citations
from .bedrock import (
    BedrockGenerationClient,
    BedrockKnowledgeBaseClient,
    BedrockRetrievalClient,
    create_client,
)
from .catalog import DocumentCatalog, S3DocumentCatalog
from .config import GenerationConfig, QueryConfig, RagConfig, Settings
from .errors import CitationProcessingError, MissingKnowledgeBaseError, ServiceError
from .models import (
    CatalogEntry,
    GenerationResponse,
    NumberedReference,
    QueryUsageRecord,
    RagResult,
    RetrievedChunk,
    TokenUsage,
)
from .prompts import (
    build_context,
    build_generation_prompt,
    build_query_config,
    knowledge_base_templates,
)
from .recorder import JsonlQueryRecorder, QueryRecorder, UsageMetrics, UsageMetricsAggregator
from .tokens import estimate_tokens

log = structlog.get_logger()

T = TypeVar("T")


class RetrievalClient(Protocol):
    def retrieve(
        self,
        question: str,
        *,
        knowledge_base_id: str,
        top_k: int,
        search_mode: str,
        reranking_model: str | None = None,
        metadata_filter: dict[str, Any] | None = None,
    ) -> Sequence[Any]: ...


class GenerationClient(Protocol):
    def generate(
        self, model_id: str, prompt: str, inference_params: GenerationConfig
    ) -> GenerationResponse: ...


class KnowledgeBaseClient(Protocol):
    def retrieve_and_generate(
        self,
        question: str,
        *,
        knowledge_base_id: str,
        model_arn: str,
        config: QueryConfig,
        generation_template: str,
        orchestration_template: str,
        session_id: str | None = None,
    ) -> GenerationResponse: ...


class QueryOrchestrator:
    """End-to-end query: retrieve → generate → cite → record."""

    def __init__(
        self,
        config: RagConfig,
        *,
        retriever: RetrievalClient | None = None,
        generator: GenerationClient | None = None,
        knowledge_base: KnowledgeBaseClient | None = None,
        catalog: DocumentCatalog | None = None,
        recorder: QueryRecorder | None = None,
        metrics: UsageMetrics | None = None,
    ) -> None:
        self._config = config
        self._retriever = retriever
        self._generator = generator
        self._knowledge_base = knowledge_base
        self._catalog = catalog
        self._recorder = recorder
        self._metrics = metrics

    @classmethod
    def from_settings(cls, settings: Settings) -> QueryOrchestrator:
        """Wire the Bedrock / S3 clients and file-backed stores from settings."""
        config = settings.rag_config()
        agent_runtime = create_client("bedrock-agent-runtime", settings)

        generator: GenerationClient
        if settings.generation_backend == "gemini":
            from .generator import GeminiGenerationClient

            generator = GeminiGenerationClient(api_key=settings.gemini_api_key)
        else:
            generator = BedrockGenerationClient(create_client("bedrock-runtime", settings))

        recorder = JsonlQueryRecorder(settings.usage_log_path)
        return cls(
            config,
            retriever=BedrockRetrievalClient(agent_runtime, region=settings.aws_region),
            generator=generator,
            knowledge_base=BedrockKnowledgeBaseClient(agent_runtime, region=settings.aws_region),
            catalog=S3DocumentCatalog(
                create_client("s3", settings),
                settings.catalog_bucket,
                min_size_bytes=settings.catalog_min_size_bytes,
            ),
            recorder=recorder,
            metrics=UsageMetricsAggregator(recorder, settings.metrics_path),
        )

    @property
    def config(self) -> RagConfig:
        return self._config

    def query(
        self,
        question: str,
        session_id: str | None = None,
        config_overrides: Mapping[str, Any] | None = None,
    ) -> RagResult:
        """Answer ``question`` from the knowledge base with numbered citations.

        ``question`` must already be trimmed and non-blank. Raises
        ``MissingKnowledgeBaseError`` before any network call when no
        knowledge base is configured, and ``ServiceError`` when retrieval
        or generation fails. Citation and recording failures only degrade
        the result. Overrides that fail validation are logged and ignored.
        """
        knowledge_base_id = self._config.knowledge_base_id
        if not knowledge_base_id:
            log.error("knowledge_base_not_configured")
            raise MissingKnowledgeBaseError()

        cfg = self._query_config(config_overrides)
        log.info("query_started", mode=cfg.orchestration.mode, chars=len(question))

        start = time.perf_counter()
        if cfg.orchestration.mode == "combined":
            response = self._retrieve_and_generate(question, knowledge_base_id, session_id, cfg)
            chunks = self._extract(response.citations)
        else:
            chunks = self._retrieve(question, knowledge_base_id, cfg)
            response = self._generate(question, chunks, cfg)
        latency_ms = int((time.perf_counter() - start) * 1000)

        answer, references = self._attribute(response.text, chunks, cfg)
        recorded_model = (
            self._config.model_id
            if cfg.orchestration.mode == "combined"
            else self._config.generator_model_id
        )
        self._record_usage(recorded_model, question, answer, response.usage, latency_ms)

        log.info(
            "query_complete",
            chunks=len(chunks),
            citations=len(references),
            latency_ms=latency_ms,
        )
        return RagResult(answer=answer, citations=references, session_id=response.session_id)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _query_config(self, overrides: Mapping[str, Any] | None) -> QueryConfig:
        try:
            return build_query_config(self._config.query, overrides)
        except (TypeError, ValueError) as exc:
            log.warning("config_overrides_rejected", error=str(exc))
            return self._config.query

    def _call(self, stage: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return fn(*args, **kwargs)
        except ServiceError:
            raise
        except Exception as exc:
            log.exception("stage_failed", stage=stage)
            raise ServiceError(stage, exc) from exc

    def _retrieve(self, question: str, knowledge_base_id: str, cfg: QueryConfig) -> list[RetrievedChunk]:
        if self._retriever is None:
            raise ServiceError("retrieval", "no retrieval client configured")
        r = cfg.retrieval
        raw = self._call(
            "retrieval",
            self._retriever.retrieve,
            question,
            knowledge_base_id=knowledge_base_id,
            top_k=r.top_k,
            search_mode=r.search_mode,
            reranking_model=r.reranking_model_id,
            metadata_filter=r.metadata_filter,
        )
        # Only chunks that reach the prompt get a citation index
        chunks = [c for c in self._extract(raw) if c.content]
        return [c.model_copy(update={"rank": i}) for i, c in enumerate(chunks, start=1)]

    def _generate(
        self, question: str, chunks: list[RetrievedChunk], cfg: QueryConfig
    ) -> GenerationResponse:
        if self._generator is None:
            raise ServiceError("generation", "no generation client configured")
        context = build_context(chunks, cfg.orchestration.max_context_chars)
        prompt = build_generation_prompt(question, context, cfg.generation.prompt_template)
        return self._call(
            "generation",
            self._generator.generate,
            self._config.generator_model_id,
            prompt,
            cfg.generation,
        )

    def _retrieve_and_generate(
        self,
        question: str,
        knowledge_base_id: str,
        session_id: str | None,
        cfg: QueryConfig,
    ) -> GenerationResponse:
        if self._knowledge_base is None:
            raise ServiceError("retrieve_and_generate", "no knowledge base client configured")
        generation_template, orchestration_template = knowledge_base_templates(cfg)
        return self._call(
            "retrieve_and_generate",
            self._knowledge_base.retrieve_and_generate,
            question,
            knowledge_base_id=knowledge_base_id,
            model_arn=self._config.model_arn,
            config=cfg,
            generation_template=generation_template,
            orchestration_template=orchestration_template,
            session_id=session_id,
        )

    def _extract(self, raw: Any) -> list[RetrievedChunk]:
        try:
            chunks = citations.extract(raw)
        except CitationProcessingError:
            log.warning("citation_extraction_failed", exc_info=True)
            return []
        log.info("chunks_extracted", count=len(chunks))
        return chunks

    def _load_catalog(self) -> list[CatalogEntry]:
        if self._catalog is None:
            return []
        try:
            return self._catalog.entries()
        except Exception:
            log.warning("catalog_unavailable", exc_info=True)
            return []

    def _attribute(
        self, answer: str, chunks: list[RetrievedChunk], cfg: QueryConfig
    ) -> tuple[str, list[NumberedReference]]:
        if not chunks:
            return answer, []
        catalog = self._load_catalog()
        try:
            return citations.attribute(
                answer,
                chunks,
                catalog,
                include_unmatched=cfg.orchestration.include_unmatched_references,
            )
        except CitationProcessingError:
            log.warning("citation_processing_failed", exc_info=True)
            return answer, []

    def _record_usage(
        self,
        model_id: str,
        question: str,
        answer: str,
        usage: TokenUsage | None,
        latency_ms: int,
    ) -> bool:
        """Persist usage and refresh daily metrics. Never raises."""
        if self._recorder is None:
            return False
        usage = usage or TokenUsage()
        try:
            record = QueryUsageRecord(
                # Pricing keys carry no inference-profile prefix
                model_id=model_id.removeprefix("us."),
                input_tokens=(
                    usage.input_tokens
                    if usage.input_tokens is not None
                    else estimate_tokens(question)
                ),
                output_tokens=(
                    usage.output_tokens
                    if usage.output_tokens is not None
                    else estimate_tokens(answer)
                ),
                user_query=question,
                latency_ms=latency_ms,
            )
            self._recorder.record(record)
        except Exception:
            log.exception("query_record_failed")
            return False

        log.info(
            "query_recorded",
            input_tokens=record.input_tokens,
            output_tokens=record.output_tokens,
        )
        if self._metrics is not None:
            try:
                self._metrics.refresh_usage_metrics(record.created_at.date())
            except Exception:
                log.exception("usage_metrics_refresh_failed")
        return True
