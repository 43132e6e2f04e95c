"""Base LLM interface and implementations.

Provides the abstract reasoning-service client used by the enrichment
pipeline and concrete implementations for Gemini, OpenAI and a generic
HTTP inference endpoint.
"""

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

import aiohttp
import google.generativeai as genai
import openai

logger = logging.getLogger(__name__)

MAX_PROMPT_LENGTH = 10000


class LLMProvider(Enum):
    """Supported LLM providers."""
    GEMINI = "gemini"
    OPENAI = "openai"
    HTTP = "http"


class MissingCredentialError(ValueError):
    """Provider configured without the API key it requires."""
    pass


@dataclass
class LLMConfig:
    """Configuration for LLM inference."""
    provider: LLMProvider
    model_name: str
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    max_tokens: int = 1024
    temperature: float = 0.2
    timeout_seconds: int = 30

    @classmethod
    def from_env(cls) -> "LLMConfig":
        """Create config from environment variables.

        Environment variables:
            LLM_PROVIDER: gemini | openai | http (default gemini)
            LLM_MODEL: Model name (default per provider)
            LLM_API_KEY: Provider API key
            LLM_ENDPOINT: Inference URL (http provider only)
            LLM_TIMEOUT_SECONDS (default 30)
        """
        provider = LLMProvider(os.getenv("LLM_PROVIDER", "gemini").lower())
        default_models = {
            LLMProvider.GEMINI: "gemini-1.5-flash",
            LLMProvider.OPENAI: "gpt-4o-mini",
            LLMProvider.HTTP: "custom",
        }
        return cls(
            provider=provider,
            model_name=os.getenv("LLM_MODEL", default_models[provider]),
            endpoint=os.getenv("LLM_ENDPOINT"),
            api_key=os.getenv("LLM_API_KEY") or None,
            timeout_seconds=int(os.getenv("LLM_TIMEOUT_SECONDS", "30")),
        )


@dataclass
class LLMResponse:
    """Response from LLM inference."""
    text: str
    model: str
    provider: str
    tokens_used: Optional[int] = None
    latency_ms: Optional[float] = None
    metadata: Optional[Dict] = None


class BaseLLM(ABC):
    """Abstract base class for LLM implementations."""

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
    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
    ) -> LLMResponse:
        """Generate a response, asking the provider for raw JSON output.

        Args:
            prompt: User prompt
            system_prompt: Optional system prompt for context

        Returns:
            LLMResponse object

        Raises:
            ValueError: If prompt is invalid
            Exception: Provider transport or API errors propagate unchanged
        """
        pass

    async def generate_batch(
        self,
        prompts: List[str],
        system_prompt: Optional[str] = None,
    ) -> List[LLMResponse]:
        tasks = [self.generate(prompt, system_prompt) for prompt in prompts]
        return await asyncio.gather(*tasks)

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

        if len(prompt) > MAX_PROMPT_LENGTH:
            logger.warning(
                "LLM_PROMPT_TOO_LONG",
                extra={"length": len(prompt), "max_length": MAX_PROMPT_LENGTH}
            )
            return False

        return True

    def _log_success(self, started: float, tokens_used: Optional[int] = None) -> float:
        latency_ms = (time.time() - started) * 1000
        logger.info(
            "LLM_GENERATION_SUCCEEDED",
            extra={
                "provider": self.config.provider.value,
                "model": self.config.model_name,
                "latency_ms": latency_ms,
                "tokens_used": tokens_used,
            }
        )
        return latency_ms

    def _log_failure(self, error: Exception) -> None:
        logger.error(
            "LLM_GENERATION_FAILED",
            extra={
                "provider": self.config.provider.value,
                "model": self.config.model_name,
                "error_type": type(error).__name__,
                "error": str(error),
            }
        )


class GeminiLLM(BaseLLM):
    """Google Gemini implementation."""

    def __init__(self, config: LLMConfig):
        """Initialize Gemini LLM.

        Raises:
            MissingCredentialError: Without an API key
        """
        super().__init__(config)

        if not config.api_key:
            raise MissingCredentialError("Gemini API key required")

        genai.configure(api_key=config.api_key)

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
    ) -> LLMResponse:
        if not self.validate_prompt(prompt):
            raise ValueError("Invalid prompt")

        model = genai.GenerativeModel(
            self.config.model_name,
            system_instruction=system_prompt,
        )
        generation_config = genai.GenerationConfig(
            response_mime_type="application/json",
            temperature=self.config.temperature,
            max_output_tokens=self.config.max_tokens,
        )

        started = time.time()
        try:
            response = await model.generate_content_async(
                prompt,
                generation_config=generation_config,
                request_options={"timeout": self.config.timeout_seconds},
            )
            text = response.text
        except Exception as e:
            self._log_failure(e)
            raise

        usage = getattr(response, "usage_metadata", None)
        tokens_used = getattr(usage, "total_token_count", None)
        latency_ms = self._log_success(started, tokens_used)

        return LLMResponse(
            text=text,
            model=self.config.model_name,
            provider=self.config.provider.value,
            tokens_used=tokens_used,
            latency_ms=latency_ms,
        )


class OpenAILLM(BaseLLM):
    """OpenAI API implementation."""

    def __init__(self, config: LLMConfig):
        """Initialize OpenAI LLM.

        Raises:
            MissingCredentialError: Without an API key
        """
        super().__init__(config)

        if not config.api_key:
            raise MissingCredentialError("OpenAI API key required")

        self.client = openai.AsyncOpenAI(api_key=config.api_key)

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
    ) -> LLMResponse:
        if not self.validate_prompt(prompt):
            raise ValueError("Invalid prompt")

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        started = time.time()
        try:
            response = await self.client.chat.completions.create(
                model=self.config.model_name,
                messages=messages,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                response_format={"type": "json_object"},
                timeout=self.config.timeout_seconds,
            )
        except Exception as e:
            self._log_failure(e)
            raise

        tokens_used = response.usage.total_tokens if response.usage else None
        latency_ms = self._log_success(started, tokens_used)

        return LLMResponse(
            text=response.choices[0].message.content or "",
            model=self.config.model_name,
            provider=self.config.provider.value,
            tokens_used=tokens_used,
            latency_ms=latency_ms,
        )


class HTTPEndpointLLM(BaseLLM):
    """Self-hosted text-generation endpoint (HuggingFace Inference format)."""

    def __init__(self, config: LLMConfig):
        super().__init__(config)

        if not config.endpoint:
            raise ValueError("Inference endpoint required")

        self.endpoint = config.endpoint
        self.headers = {}

        if config.api_key:
            self.headers["Authorization"] = f"Bearer {config.api_key}"

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
    ) -> LLMResponse:
        if not self.validate_prompt(prompt):
            raise ValueError("Invalid prompt")

        full_prompt = prompt
        if system_prompt:
            full_prompt = f"{system_prompt}\n\n{prompt}"

        payload = {
            "inputs": full_prompt,
            "parameters": {
                "max_new_tokens": self.config.max_tokens,
                "temperature": self.config.temperature,
                "return_full_text": False
            }
        }

        started = time.time()
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.endpoint,
                    headers=self.headers,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds)
                ) as response:
                    response.raise_for_status()
                    result = await response.json()
        except Exception as e:
            self._log_failure(e)
            raise

        if isinstance(result, list) and len(result) > 0:
            generated_text = result[0].get("generated_text", "")
        else:
            generated_text = result.get("generated_text", "")

        latency_ms = self._log_success(started)

        return LLMResponse(
            text=generated_text,
            model=self.config.model_name,
            provider=self.config.provider.value,
            latency_ms=latency_ms,
            metadata={"endpoint": self.endpoint}
        )


def create_llm(config: LLMConfig) -> BaseLLM:
    """Factory function to create LLM instance.

    Args:
        config: LLM configuration

    Returns:
        BaseLLM instance

    Raises:
        MissingCredentialError: If the provider needs an API key and has none
        ValueError: If provider not supported
    """
    if config.provider == LLMProvider.GEMINI:
        return GeminiLLM(config)
    elif config.provider == LLMProvider.OPENAI:
        return OpenAILLM(config)
    elif config.provider == LLMProvider.HTTP:
        return HTTPEndpointLLM(config)
    else:
        raise ValueError(f"Unsupported provider: {config.provider}")
