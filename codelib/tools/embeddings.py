"""
Embeddings tool — semantic identity for library items.

Supports (in priority order):
1. OpenAI-compatible /embeddings endpoint (text-embedding-3-small, 1536-dim)
2. Ollama nomic-embed-text (local fallback)
3. Hugging Face Inference API (cloud fallback)

IMPORTANT: Every provider MUST produce settings.embedding_dim vectors. Stored
embeddings, family centroids and every similarity threshold assume one
vector space; a fallback with a different dimension would silently break
auto-reuse and coherence. Mismatched vectors are rejected (treated as absent).

Failure contract: embed_text() never raises. No provider / empty text /
dimension mismatch → None, and callers treat the item as having no
semantic identity.
"""

import asyncio
import logging
from typing import List, Optional

import httpx
import numpy as np

from ..config import get_settings

logger = logging.getLogger(__name__)


class EmbeddingTool:
    """
    Generate embeddings with an API-first strategy.

    Priority:
    1. OpenAI-compatible API (OPENAI_API_KEY set)
    2. Ollama nomic-embed-text (USE_OLLAMA=true)
    3. Hugging Face API (HF_API_KEY set)
    """

    def __init__(self) -> None:
        self.settings = get_settings()
        self._hf_client = None
        self._ollama_available: Optional[bool] = None
        self._embedding_dim = self.settings.embedding_dim
        self._active_provider: Optional[str] = None

    @property
    def hf_client(self):
        """Lazy-load Hugging Face client."""
        if self._hf_client is not None:
            return self._hf_client

        if not self.settings.huggingface_api_key:
            logger.debug("HF_API_KEY not set, Hugging Face embeddings unavailable")
            return None

        from huggingface_hub import InferenceClient
        self._hf_client = InferenceClient(token=self.settings.huggingface_api_key)
        logger.info("Hugging Face embeddings initialized")
        return self._hf_client

    @property
    def ollama_available(self) -> bool:
        """Check if Ollama is available for embeddings (cached after first check)."""
        if self._ollama_available is not None:
            return self._ollama_available

        if not self.settings.use_ollama:
            self._ollama_available = False
            return False

        try:
            with httpx.Client(timeout=5.0) as client:
                response = client.get(f"{self.settings.ollama_base_url}/api/tags")
                self._ollama_available = response.status_code == 200
                if self._ollama_available:
                    logger.info("Ollama available for embeddings")
        except httpx.HTTPError:
            self._ollama_available = False
            logger.debug("Ollama not available for embeddings")

        return self._ollama_available

    @property
    def embedding_dim(self) -> int:
        return self._embedding_dim

    def embed_text(self, text: str) -> Optional[List[float]]:
        """Generate embedding for a single text. Returns None on failure."""
        if not text or not text.strip():
            return None

        embedding = self._try_embed(text)
        if embedding is None:
            logger.error("No embedding backend available (set OPENAI_API_KEY, HF_API_KEY or enable Ollama)")
        return embedding

    def _try_embed(self, text: str) -> Optional[List[float]]:
        """Try each backend in priority order: OpenAI → Ollama → HF API."""
        # 1. OpenAI-compatible API
        if self.settings.openai_api_key:
            try:
                return self._checked("openai", self._embed_openai(text))
            except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
                logger.warning(f"OpenAI embedding failed: {e}, trying Ollama")

        # 2. Ollama
        if self.ollama_available:
            try:
                return self._checked("ollama", self._embed_ollama(text))
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"Ollama embedding failed: {e}, trying HF API")

        # 3. HuggingFace API
        if self.hf_client:
            try:
                return self._checked("huggingface", self._embed_hf(text))
            except Exception as e:
                logger.error(f"HuggingFace embedding failed: {e}")

        return None

    def _checked(self, provider: str, embedding: List[float]) -> List[float]:
        """Reject empty or wrong-dimension vectors (raises → next provider)."""
        if not embedding:
            raise ValueError(f"{provider} returned an empty embedding")
        if len(embedding) != self._embedding_dim:
            raise ValueError(
                f"{provider} produces {len(embedding)}-dim embeddings "
                f"but the library expects {self._embedding_dim}-dim. Cannot mix dimensions."
            )
        if self._active_provider != provider:
            self._active_provider = provider
            logger.info(f"Embedding provider: {provider} (dim={self._embedding_dim})")
        return embedding

    def _embed_openai(self, text: str) -> List[float]:
        """POST /embeddings on an OpenAI-compatible endpoint."""
        url = f"{self.settings.embedding_base_url.rstrip('/')}/embeddings"
        headers = {"Authorization": f"Bearer {self.settings.openai_api_key}"}
        payload = {"model": self.settings.embedding_model, "input": text}

        with httpx.Client(timeout=self.settings.embedding_timeout) as client:
            response = client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            return response.json()["data"][0]["embedding"]

    def _embed_ollama(self, text: str) -> List[float]:
        """Generate embedding using Ollama API."""
        url = f"{self.settings.ollama_base_url}/api/embeddings"
        payload = {"model": self.settings.ollama_embedding_model, "prompt": text}

        with httpx.Client(timeout=60.0) as client:
            response = client.post(url, json=payload)
            response.raise_for_status()
            return response.json().get("embedding", [])

    def _embed_hf(self, text: str) -> List[float]:
        """Generate embedding using Hugging Face API."""
        result = self.hf_client.feature_extraction(
            text,
            model=self.settings.hf_embedding_model,
        )

        if isinstance(result, np.ndarray):
            result = result.tolist()
        # Some models return nested [[...]] instead of flat [...]
        if result and isinstance(result[0], list):
            return result[0]
        return list(result)


# ── Convenience functions ──────────────────────────────────────────────────────

async def embed_off_loop(tool, text: str) -> Optional[List[float]]:
    """Run tool.embed_text on a worker thread. Any failure → None (absent)."""
    try:
        embedding = await asyncio.to_thread(tool.embed_text, text)
    except Exception as e:
        logger.warning(f"Embedding failed for '{text[:60]}': {e}")
        return None
    return embedding or None
