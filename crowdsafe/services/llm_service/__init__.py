"""LLM Service: reasoning-service clients for incident enrichment.

Provides:
- BaseLLM: async generate() contract returning raw provider text
- GeminiLLM, OpenAILLM, HTTPEndpointLLM: provider implementations
- create_llm: factory keyed on LLMConfig.provider
"""

from .base_llm import (
    BaseLLM,
    GeminiLLM,
    HTTPEndpointLLM,
    LLMConfig,
    LLMProvider,
    LLMResponse,
    MissingCredentialError,
    OpenAILLM,
    create_llm,
)

__all__ = [
    "BaseLLM",
    "GeminiLLM",
    "HTTPEndpointLLM",
    "LLMConfig",
    "LLMProvider",
    "LLMResponse",
    "MissingCredentialError",
    "OpenAILLM",
    "create_llm",
]
