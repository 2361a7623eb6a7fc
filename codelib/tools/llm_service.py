"""
LLM Service — pydantic-ai backed structured output for the library oracle.

Every oracle call is "prompt in, validated model out": the Pydantic model's
own validators coerce the LLM output, and pydantic-ai retries on validation
failure. Agents are cached per (output_type, system prompt, retries).
"""

import logging
from typing import Dict, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic_ai import Agent
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openai import OpenAIProvider
from pydantic_ai.settings import ModelSettings

from ..config import Settings, get_settings

logger = logging.getLogger(__name__)

T = TypeVar('T', bound=BaseModel)


class LLMService:
    """High-level LLM service backed by pydantic-ai.

    Talks to any OpenAI-compatible chat endpoint (DeepSeek by default).
    """

    # Cache agents by (model, output_type, system_prompt_hash, retries) across all instances
    _agent_cache: Dict[tuple, Agent] = {}

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._model: Optional[OpenAIChatModel] = None
        self.last_model: Optional[str] = None

    def _build_model(self) -> OpenAIChatModel:
        """OpenAI-compatible chat model (DeepSeek base URL unless overridden)."""
        if not self.settings.llm_api_key:
            raise RuntimeError("No LLM provider configured (set DEEPSEEK_API_KEY)")
        if self._model is None:
            self._model = OpenAIChatModel(
                self.settings.llm_model,
                provider=OpenAIProvider(
                    base_url=self.settings.llm_base_url,
                    api_key=self.settings.llm_api_key,
                ),
            )
            logger.info(f"LLM: {self.settings.llm_model} via {self.settings.llm_base_url}")
        return self._model

    def _get_or_create_agent(self, output_type: type, system_prompt: str, retries: int = 2) -> Agent:
        key = (self.settings.llm_model, self.settings.llm_base_url, output_type, hash(system_prompt), retries)
        if key not in self._agent_cache:
            self._agent_cache[key] = Agent(
                self._build_model(),
                output_type=output_type,
                system_prompt=system_prompt,
                retries=retries,
            )
        return self._agent_cache[key]

    async def run_structured(
        self,
        prompt: str,
        system_prompt: str = "",
        output_type: Type[T] = str,  # type: ignore[assignment]
        retries: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> T:
        """Generate structured output validated by pydantic-ai.

        Raises whatever the provider raises (network, auth, exhausted
        retries); callers decide whether a failed call is fatal.
        """
        retries = retries if retries is not None else self.settings.llm_json_max_retries
        temperature = temperature if temperature is not None else self.settings.llm_temperature
        agent = self._get_or_create_agent(output_type, system_prompt, retries)
        result = await agent.run(
            prompt,
            model_settings=ModelSettings(temperature=temperature),
        )
        self.last_model = self.settings.llm_model
        return result.output

    @classmethod
    def clear_cache(cls):
        """Clear agent cache. Useful for testing or config changes."""
        cls._agent_cache.clear()
