"""Structured-output LLM interface and implementations.

The safety evaluator treats the model as a black box: given a prompt and
a JSON schema, return JSON text conforming to the schema, or raise.
Response time is unbounded here; the evaluator client enforces the
deadline.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import openai

logger = logging.getLogger(__name__)


class LLMProvider(Enum):
    """Supported LLM providers."""
    OPENAI = "openai"


@dataclass
class LLMConfig:
    """Configuration for LLM inference."""
    provider: LLMProvider
    model_name: str
    api_key: Optional[str] = None
    endpoint: Optional[str] = None
    max_tokens: int = 512
    temperature: float = 0.0
    timeout_seconds: int = 30


class StructuredLLM(ABC):
    """Abstract base class for structured JSON generation."""

    # Reasonable upper bound; the evaluator's rolling window keeps prompts small
    MAX_PROMPT_CHARS = 20000

    def __init__(self, config: LLMConfig):
        """Initialize LLM with configuration.

        Args:
            config: LLM configuration
        """
        self.config = config
        logger.info(
            "LLM_INITIALIZED",
            extra={
                "provider": config.provider.value,
                "model": config.model_name
            }
        )

    @abstractmethod
    async def generate_json(
        self,
        prompt: str,
        schema: Dict[str, Any],
        schema_name: str = "structured_output",
    ) -> str:
        """Generate JSON text conforming to schema.

        Args:
            prompt: Full instruction prompt
            schema: JSON schema the output must follow
            schema_name: Identifier for the schema (provider metadata)

        Returns:
            Raw JSON text as returned by the provider

        Raises:
            ValueError: If prompt is invalid
            Exception: Any provider or network error
        """

    async def aclose(self) -> None:
        """Release provider resources. Default: nothing to release."""

    def validate_prompt(self, prompt: str) -> bool:
        """Validate prompt before sending to LLM.

        Args:
            prompt: The prompt to validate

        Returns:
            True if valid, False otherwise
        """
        if not prompt or not prompt.strip():
            logger.warning("LLM_PROMPT_EMPTY")
            return False

        if len(prompt) > self.MAX_PROMPT_CHARS:
            logger.warning(
                "LLM_PROMPT_TOO_LONG",
                extra={"length": len(prompt), "max_length": self.MAX_PROMPT_CHARS}
            )
            return False

        return True


class OpenAIStructuredLLM(StructuredLLM):
    """OpenAI chat completions with a JSON-schema response format."""

    def __init__(self, config: LLMConfig):
        """Initialize OpenAI LLM.

        Args:
            config: LLM configuration with API key

        Raises:
            ValueError: If no API key is configured
        """
        super().__init__(config)

        if not config.api_key:
            raise ValueError("OpenAI API key required")

        self.client = openai.AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.endpoint,
            timeout=config.timeout_seconds,
        )

    async def generate_json(
        self,
        prompt: str,
        schema: Dict[str, Any],
        schema_name: str = "structured_output",
    ) -> str:
        """Generate JSON using the OpenAI API.

        Args:
            prompt: Full instruction prompt
            schema: JSON schema for the response
            schema_name: Schema identifier sent to the provider

        Returns:
            Raw JSON text ("{}" if the provider returned no content)
        """
        if not self.validate_prompt(prompt):
            raise ValueError("Invalid prompt")

        start_time = time.perf_counter()

        try:
            response = await self.client.chat.completions.create(
                model=self.config.model_name,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                response_format={
                    "type": "json_schema",
                    "json_schema": {
                        "name": schema_name,
                        "schema": schema,
                        "strict": False,
                    },
                },
            )
        except Exception as e:
            logger.error(
                "OPENAI_GENERATION_FAILED",
                extra={
                    "model": self.config.model_name,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )
            raise

        latency_ms = (time.perf_counter() - start_time) * 1000
        generated_text = response.choices[0].message.content or "{}"

        logger.info(
            "OPENAI_GENERATION_SUCCEEDED",
            extra={
                "model": self.config.model_name,
                "latency_ms": latency_ms,
                "tokens_used": response.usage.total_tokens if response.usage else None,
            }
        )

        return generated_text

    async def aclose(self) -> None:
        await self.client.close()


def create_llm(config: LLMConfig) -> StructuredLLM:
    """Factory function to create LLM instance.

    Args:
        config: LLM configuration

    Returns:
        StructuredLLM instance

    Raises:
        ValueError: If provider not supported or misconfigured
    """
    if config.provider == LLMProvider.OPENAI:
        return OpenAIStructuredLLM(config)
    raise ValueError(f"Unsupported provider: {config.provider}")
