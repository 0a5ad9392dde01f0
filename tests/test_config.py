import pytest
from pydantic import ValidationError

from src.kbqa.config import RagConfig, Settings


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "KBQA_KNOWLEDGE_BASE_ID",
        "BEDROCK_KNOWLEDGE_BASE_ID",
        "KBQA_MODEL_ID",
        "BEDROCK_MODEL_ID",
        "KBQA_AWS_REGION",
        "AWS_REGION",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    s = Settings(_env_file=None)
    assert s.knowledge_base_id is None
    assert s.top_k == 20
    assert s.search_mode == "HYBRID"
    assert s.max_context_chars == 50_000


def test_knowledge_base_from_legacy_env(clean_env):
    clean_env.setenv("BEDROCK_KNOWLEDGE_BASE_ID", "kb-env")
    assert Settings(_env_file=None).knowledge_base_id == "kb-env"


def test_prefixed_env(clean_env):
    clean_env.setenv("KBQA_TOP_K", "8")
    clean_env.setenv("KBQA_MODE", "combined")
    s = Settings(_env_file=None)
    assert s.top_k == 8
    assert s.rag_config().query.orchestration.mode == "combined"


def test_rag_config_resolution(clean_env):
    config = Settings(
        _env_file=None,
        knowledge_base_id="kb-1",
        aws_region="us-west-2",
        model_id="us.anthropic.claude-3-5-sonnet-20241022-v2:0",
        top_k=12,
        temperature=0.1,
    ).rag_config()

    assert config.knowledge_base_id == "kb-1"
    assert config.query.retrieval.top_k == 12
    assert config.query.generation.temperature == 0.1
    assert config.foundation_model_id == "anthropic.claude-3-5-sonnet-20241022-v2:0"
    assert config.model_arn == (
        "arn:aws:bedrock:us-west-2::foundation-model/anthropic.claude-3-5-sonnet-20241022-v2:0"
    )


def test_empty_knowledge_base_is_unset(clean_env):
    assert Settings(_env_file=None, knowledge_base_id="").rag_config().knowledge_base_id is None


def test_gemini_backend_uses_gemini_model(clean_env):
    config = Settings(_env_file=None, generation_backend="gemini", gemini_model="gemini-2.5-pro").rag_config()
    assert config.generator_model_id == "gemini-2.5-pro"
    assert config.model_id == "anthropic.claude-3-haiku-20240307-v1:0"
    assert config.model_arn.endswith("foundation-model/anthropic.claude-3-haiku-20240307-v1:0")


def test_bedrock_backend_generates_with_model_id(clean_env):
    config = Settings(_env_file=None, model_id="anthropic.claude-3-sonnet-20240229-v1:0").rag_config()
    assert config.generation_model_id is None
    assert config.generator_model_id == "anthropic.claude-3-sonnet-20240229-v1:0"


def test_rag_config_is_frozen():
    config = RagConfig(knowledge_base_id="kb")
    with pytest.raises(ValidationError):
        config.knowledge_base_id = "other"
