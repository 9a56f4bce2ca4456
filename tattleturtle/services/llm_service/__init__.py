"""LLM service: the external structured-generation capability."""

from .base_llm import LLMConfig, LLMProvider, OpenAIStructuredLLM, StructuredLLM, create_llm

__all__ = ["LLMConfig", "LLMProvider", "OpenAIStructuredLLM", "StructuredLLM", "create_llm"]
