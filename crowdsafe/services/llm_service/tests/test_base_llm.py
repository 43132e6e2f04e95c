"""Tests for reasoning-service clients."""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from crowdsafe.services.llm_service.base_llm import (
    GeminiLLM,
    HTTPEndpointLLM,
    LLMConfig,
    LLMProvider,
    MissingCredentialError,
    OpenAILLM,
    create_llm,
)

INSIGHT_JSON = '{"risk": "HIGH", "summary": "Surge at Gate A", "actions": ["Hold entry"]}'


class TestLLMConfig:
    def test_from_env_defaults_to_gemini(self):
        with patch.dict("os.environ", {}, clear=True):
            config = LLMConfig.from_env()

        assert config.provider is LLMProvider.GEMINI
        assert config.model_name == "gemini-1.5-flash"
        assert config.api_key is None
        assert config.timeout_seconds == 30

    def test_from_env(self):
        with patch.dict("os.environ", {
            "LLM_PROVIDER": "OpenAI",
            "LLM_MODEL": "gpt-4o",
            "LLM_API_KEY": "sk-test",
            "LLM_TIMEOUT_SECONDS": "12",
        }, clear=True):
            config = LLMConfig.from_env()

        assert config.provider is LLMProvider.OPENAI
        assert config.model_name == "gpt-4o"
        assert config.api_key == "sk-test"
        assert config.timeout_seconds == 12


class TestCreateLLM:
    def test_gemini_without_key_raises(self):
        with pytest.raises(MissingCredentialError):
            create_llm(LLMConfig(LLMProvider.GEMINI, "gemini-1.5-flash"))

    def test_openai_without_key_raises(self):
        with pytest.raises(MissingCredentialError):
            create_llm(LLMConfig(LLMProvider.OPENAI, "gpt-4o-mini"))

    def test_http_without_endpoint_raises(self):
        with pytest.raises(ValueError):
            create_llm(LLMConfig(LLMProvider.HTTP, "custom"))

    def test_missing_credential_is_value_error(self):
        assert issubclass(MissingCredentialError, ValueError)

    def test_builds_http_client(self):
        llm = create_llm(LLMConfig(LLMProvider.HTTP, "custom", endpoint="http://infer.local"))
        assert isinstance(llm, HTTPEndpointLLM)


class TestPromptValidation:
    @pytest.mark.asyncio
    async def test_empty_prompt_rejected(self):
        llm = HTTPEndpointLLM(LLMConfig(LLMProvider.HTTP, "custom", endpoint="http://infer.local"))
        with pytest.raises(ValueError):
            await llm.generate("   ")

    def test_overlong_prompt_rejected(self):
        llm = HTTPEndpointLLM(LLMConfig(LLMProvider.HTTP, "custom", endpoint="http://infer.local"))
        assert llm.validate_prompt("x" * 10001) is False
        assert llm.validate_prompt("Reported Density: HIGH") is True


class TestGeminiLLM:
    @pytest.mark.asyncio
    async def test_generate_requests_json(self):
        with patch("crowdsafe.services.llm_service.base_llm.genai") as genai:
            model = genai.GenerativeModel.return_value
            model.generate_content_async = AsyncMock(
                return_value=MagicMock(text=INSIGHT_JSON, usage_metadata=MagicMock(total_token_count=42))
            )

            llm = GeminiLLM(LLMConfig(LLMProvider.GEMINI, "gemini-1.5-flash", api_key="key"))
            response = await llm.generate("prompt", system_prompt="system")

        genai.configure.assert_called_once_with(api_key="key")
        genai.GenerativeModel.assert_called_once_with("gemini-1.5-flash", system_instruction="system")
        assert genai.GenerationConfig.call_args.kwargs["response_mime_type"] == "application/json"
        assert response.text == INSIGHT_JSON
        assert response.tokens_used == 42
        assert response.provider == "gemini"

    @pytest.mark.asyncio
    async def test_errors_propagate(self):
        with patch("crowdsafe.services.llm_service.base_llm.genai") as genai:
            genai.GenerativeModel.return_value.generate_content_async = AsyncMock(
                side_effect=RuntimeError("quota exceeded")
            )
            llm = GeminiLLM(LLMConfig(LLMProvider.GEMINI, "gemini-1.5-flash", api_key="key"))

            with pytest.raises(RuntimeError):
                await llm.generate("prompt")


class TestOpenAILLM:
    @pytest.mark.asyncio
    async def test_generate_uses_json_mode(self):
        llm = OpenAILLM(LLMConfig(LLMProvider.OPENAI, "gpt-4o-mini", api_key="sk-test"))
        completion = MagicMock()
        completion.choices[0].message.content = INSIGHT_JSON
        completion.usage.total_tokens = 99
        llm.client = MagicMock()
        llm.client.chat.completions.create = AsyncMock(return_value=completion)

        response = await llm.generate("prompt", system_prompt="system")

        kwargs = llm.client.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"][0] == {"role": "system", "content": "system"}
        assert response.text == INSIGHT_JSON
        assert response.tokens_used == 99


class TestHTTPEndpointLLM:
    @pytest.mark.asyncio
    async def test_generate_posts_payload(self):
        http_response = MagicMock()
        http_response.json = AsyncMock(return_value=[{"generated_text": INSIGHT_JSON}])
        post_ctx = MagicMock()
        post_ctx.__aenter__ = AsyncMock(return_value=http_response)
        post_ctx.__aexit__ = AsyncMock(return_value=False)
        session = MagicMock()
        session.post.return_value = post_ctx
        session_ctx = MagicMock()
        session_ctx.__aenter__ = AsyncMock(return_value=session)
        session_ctx.__aexit__ = AsyncMock(return_value=False)

        llm = HTTPEndpointLLM(LLMConfig(
            LLMProvider.HTTP, "custom", endpoint="http://infer.local", api_key="tok"
        ))
        with patch("crowdsafe.services.llm_service.base_llm.aiohttp.ClientSession", return_value=session_ctx):
            response = await llm.generate("prompt", system_prompt="system")

        args, kwargs = session.post.call_args
        assert args[0] == "http://infer.local"
        assert kwargs["headers"] == {"Authorization": "Bearer tok"}
        assert kwargs["json"]["inputs"] == "system\n\nprompt"
        assert response.text == INSIGHT_JSON
