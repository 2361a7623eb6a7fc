"""
Configuration management for the self-organizing code library.
Supports DeepSeek / any OpenAI-compatible chat API for the oracle and
OpenAI-compatible, Ollama or HuggingFace endpoints for embeddings.
"""

from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # LLM Configuration (oracle: outline, judge, atom extraction, parent creation)
    llm_api_key: str = Field(default="", alias="DEEPSEEK_API_KEY")
    llm_model: str = Field(default="deepseek-chat", alias="LLM_MODEL")
    llm_base_url: str = Field(default="https://api.deepseek.com", alias="LLM_BASE_URL")
    llm_temperature: float = Field(default=0.2, alias="LLM_TEMPERATURE")
    llm_json_max_retries: int = Field(default=2, alias="LLM_JSON_MAX_RETRIES")

    # Embedding Configuration
    # Primary: OpenAI-compatible /embeddings endpoint (text-embedding-3-small, 1536-dim).
    # Fallbacks must produce the SAME dimension; mismatches are rejected.
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    embedding_model: str = Field(default="text-embedding-3-small", alias="EMBEDDING_MODEL")
    embedding_base_url: str = Field(default="https://api.openai.com/v1", alias="EMBEDDING_BASE_URL")
    embedding_dim: int = Field(default=1536, alias="EMBEDDING_DIM")
    embedding_timeout: float = Field(default=30.0, alias="EMBEDDING_TIMEOUT")

    use_ollama: bool = Field(default=False, alias="USE_OLLAMA")
    ollama_base_url: str = Field(default="http://localhost:11434", alias="OLLAMA_BASE_URL")
    ollama_embedding_model: str = Field(default="nomic-embed-text", alias="OLLAMA_EMBEDDING_MODEL")

    huggingface_api_key: str = Field(default="", alias="HF_API_KEY")
    hf_embedding_model: str = Field(default="BAAI/bge-small-en-v1.5", alias="HF_EMBEDDING_MODEL")

    # ── Resolution cascade ──
    # Same name + same kind + cosine at or above this → reuse without asking the judge
    auto_reuse_threshold: float = Field(default=0.875, alias="AUTO_REUSE_THRESHOLD")
    # Minimum cosine for a library item to be shown to the judge
    search_threshold: float = Field(default=0.70, alias="SEARCH_THRESHOLD")
    search_limit: int = Field(default=15, alias="SEARCH_LIMIT")
    rerank_top: int = Field(default=5, alias="RERANK_TOP")

    # ── Decomposition ──
    # Lines per file sent to the outline call (signatures, not full code)
    signature_lines: int = Field(default=30, alias="SIGNATURE_LINES")

    # ── Coherence engine ──
    # OBSERVED RANGES (text-embedding-3-small, code snippets):
    # - Same concept, different implementation: 0.82-0.92
    # - Same broad area: 0.70-0.80
    # - Unrelated: < 0.60
    variant_threshold: float = Field(default=0.82, alias="VARIANT_THRESHOLD")
    family_threshold: float = Field(default=0.70, alias="FAMILY_THRESHOLD")
    split_threshold: float = Field(default=0.72, alias="SPLIT_THRESHOLD")
    merge_threshold: float = Field(default=0.85, alias="MERGE_THRESHOLD")
    split_min_cohesion: float = Field(default=0.78, alias="SPLIT_MIN_COHESION")
    coherence_budget: int = Field(default=2, alias="COHERENCE_BUDGET")
    min_split_size: int = Field(default=3, alias="MIN_SPLIT_SIZE")
    coherence_cooldown_seconds: int = Field(default=300, alias="COHERENCE_COOLDOWN_SECONDS")
    merge_candidate_limit: int = Field(default=3, alias="MERGE_CANDIDATE_LIMIT")
    absorb_candidate_limit: int = Field(default=5, alias="ABSORB_CANDIDATE_LIMIT")

    # API
    api_key: str = Field(default="", alias="API_KEY")

    # Database
    database_url: str = Field(
        default="sqlite:///./library.db",
        alias="DATABASE_URL"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"
        populate_by_name = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
