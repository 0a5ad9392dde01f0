from __future__ import annotations

import os
from typing import Any

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import GenerationConfig, QueryConfig, Settings
from .errors import BedrockServiceError
from .models import GenerationResponse, TokenUsage

log = structlog.get_logger()

_BOTO_CONFIG = Config(user_agent_extra="kbqa")


def create_client(service_name: str, settings: Settings) -> Any:
    """Build a boto3 client using the first credential source that is set.

    Bearer token, then explicit access keys, then the default boto3 chain
    (profile, instance role, ...).
    """
    kwargs: dict[str, Any] = {"region_name": settings.aws_region, "config": _BOTO_CONFIG}
    if settings.bedrock_bearer_token:
        # botocore reads Bedrock API keys from this variable itself
        os.environ.setdefault("AWS_BEARER_TOKEN_BEDROCK", settings.bedrock_bearer_token)
    elif settings.aws_access_key_id and settings.aws_secret_access_key:
        kwargs["aws_access_key_id"] = settings.aws_access_key_id
        kwargs["aws_secret_access_key"] = settings.aws_secret_access_key
    if settings.ca_bundle_path:
        kwargs["verify"] = settings.ca_bundle_path
    return boto3.client(service_name, **kwargs)


def _model_arn(model: str, region: str) -> str:
    if model.startswith("arn:"):
        return model
    return f"arn:aws:bedrock:{region}::foundation-model/{model}"


def vector_search_configuration(
    top_k: int,
    search_mode: str,
    reranking_model: str | None = None,
    metadata_filter: dict[str, Any] | None = None,
    region: str = "us-east-1",
) -> dict[str, Any]:
    config: dict[str, Any] = {
        "numberOfResults": top_k,
        "overrideSearchType": search_mode,
    }
    if reranking_model:
        config["rerankingConfiguration"] = {
            "type": "BEDROCK_RERANKING_MODEL",
            "bedrockRerankingConfiguration": {
                "modelConfiguration": {"modelArn": _model_arn(reranking_model, region)},
                "numberOfRerankedResults": top_k,
            },
        }
    if metadata_filter:
        config["filter"] = metadata_filter
    return config


def _text_inference_config(params: GenerationConfig) -> dict[str, Any]:
    config: dict[str, Any] = {
        "temperature": params.temperature,
        "topP": params.top_p,
        "maxTokens": params.max_tokens,
    }
    if params.stop_sequences:
        config["stopSequences"] = list(params.stop_sequences)
    return config


def _usage(raw: dict[str, Any] | None) -> TokenUsage | None:
    if not raw:
        return None
    return TokenUsage(
        input_tokens=raw.get("inputTokens", raw.get("input_tokens")),
        output_tokens=raw.get("outputTokens", raw.get("output_tokens")),
    )


class BedrockRetrievalClient:
    """Ranked retrieval against a Bedrock knowledge base."""

    def __init__(self, client: Any, region: str = "us-east-1") -> None:
        self._client = client
        self._region = region

    def retrieve(
        self,
        question: str,
        *,
        knowledge_base_id: str,
        top_k: int = 20,
        search_mode: str = "HYBRID",
        reranking_model: str | None = None,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        config = vector_search_configuration(
            top_k, search_mode, reranking_model, metadata_filter, self._region
        )
        try:
            response = self._client.retrieve(
                knowledgeBaseId=knowledge_base_id,
                retrievalQuery={"text": question},
                retrievalConfiguration={"vectorSearchConfiguration": config},
            )
        except (BotoCoreError, ClientError) as exc:
            log.error("bedrock_retrieve_failed", error=str(exc))
            raise BedrockServiceError("retrieval", exc) from exc

        results = response.get("retrievalResults", [])
        log.info("bedrock_retrieved", results=len(results), search_mode=search_mode)
        return results


class BedrockGenerationClient:
    """Text generation through the Bedrock Converse API."""

    def __init__(self, client: Any) -> None:
        self._client = client

    def generate(
        self,
        model_id: str,
        prompt: str,
        inference_params: GenerationConfig,
    ) -> GenerationResponse:
        request: dict[str, Any] = {
            "modelId": model_id,
            "messages": [{"role": "user", "content": [{"text": prompt}]}],
            "inferenceConfig": _text_inference_config(inference_params),
        }
        if inference_params.performance_mode == "optimized":
            request["performanceConfig"] = {"latency": "optimized"}

        try:
            response = self._client.converse(**request)
        except (BotoCoreError, ClientError) as exc:
            log.error("bedrock_converse_failed", model=model_id, error=str(exc))
            raise BedrockServiceError("generation", exc) from exc

        blocks = response.get("output", {}).get("message", {}).get("content", [])
        text = "".join(block.get("text", "") for block in blocks)
        usage = _usage(response.get("usage"))
        log.info("bedrock_generated", model=model_id, chars=len(text))
        return GenerationResponse(text=text, usage=usage)


class BedrockKnowledgeBaseClient:
    """Single retrieve-and-generate call against a knowledge base."""

    def __init__(self, client: Any, region: str = "us-east-1") -> None:
        self._client = client
        self._region = region

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
    ) -> GenerationResponse:
        retrieval = config.retrieval
        generation = config.generation
        inference = {"textInferenceConfig": _text_inference_config(generation)}
        performance = {"latency": generation.performance_mode}

        kb_config: dict[str, Any] = {
            "knowledgeBaseId": knowledge_base_id,
            "modelArn": model_arn,
            "retrievalConfiguration": {
                "vectorSearchConfiguration": vector_search_configuration(
                    retrieval.top_k,
                    retrieval.search_mode,
                    retrieval.reranking_model_id,
                    retrieval.metadata_filter,
                    self._region,
                )
            },
            "generationConfiguration": {
                "promptTemplate": {"textPromptTemplate": generation_template},
                "inferenceConfig": inference,
                "performanceConfig": performance,
            },
            "orchestrationConfiguration": {
                "promptTemplate": {"textPromptTemplate": orchestration_template},
                "inferenceConfig": inference,
                "performanceConfig": performance,
            },
        }
        request: dict[str, Any] = {
            "input": {"text": question},
            "retrieveAndGenerateConfiguration": {
                "type": "KNOWLEDGE_BASE",
                "knowledgeBaseConfiguration": kb_config,
            },
        }
        if session_id:
            request["sessionId"] = session_id

        try:
            response = self._client.retrieve_and_generate(**request)
        except (BotoCoreError, ClientError) as exc:
            log.error("bedrock_retrieve_and_generate_failed", error=str(exc))
            raise BedrockServiceError("retrieve_and_generate", exc) from exc

        citations = response.get("citations") or []
        log.info("bedrock_retrieve_and_generate_complete", citations=len(citations))
        return GenerationResponse(
            text=(response.get("output") or {}).get("text", ""),
            usage=_usage(response.get("usage")),
            citations=citations,
            session_id=response.get("sessionId"),
        )
