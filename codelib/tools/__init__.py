# Tools module
from .llm_service import LLMService
from .embeddings import EmbeddingTool, embed_off_loop

__all__ = [
    # LLM
    "LLMService",
    # Embeddings
    "EmbeddingTool",
    "embed_off_loop",
]
