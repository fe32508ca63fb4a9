import json

import httpx
import pytest
import respx

from prism.adapters import (
    AnthropicAdapter,
    GeminiAdapter,
    GroqAdapter,
    Message,
    MistralAdapter,
    ModelOptions,
    NormalizedRequest,
    OpenAIAdapter,
    TokenUsage,
    build_adapters,
    estimate_tokens,
    extract_error_message,
    format_model_id,
    get_all_providers,
    known_model_ids,
    parse_model_id,
)
from prism.errors import ProviderError

USER_HELLO = [Message("user", "Hello")]


class TestHelpers:
    """Model ids, token estimates and usage normalization"""

    def test_parse_model_id(self):
        """Provider and model split on the first colon"""
        assert parse_model_id("openai:gpt-4o") == ("openai", "gpt-4o")
        assert parse_model_id("groq:llama:extra") == ("groq", "llama:extra")
        assert format_model_id("gemini", "gemini-1.5-pro") == "gemini:gemini-1.5-pro"

    def test_estimate_tokens(self):
        """About four characters per token, rounded up"""
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_usage_counts_are_clamped(self):
        """Missing or negative counts become zero"""
        usage = TokenUsage.from_counts(None, -4)
        assert usage == TokenUsage(0, 0, 0)
        assert TokenUsage.from_counts(10, 5).total_tokens == 15
        assert TokenUsage.from_counts(10, 5, 20).total_tokens == 20

    def test_message_role_checked(self):
        """Unknown roles are rejected"""
        with pytest.raises(ValueError):
            Message("tool", "x")

    def test_known_model_ids(self):
        """Catalog covers every provider"""
        ids = known_model_ids()
        assert "openai:gpt-4o" in ids
        assert "anthropic:claude-3-5-sonnet-20241022" in ids
        assert "gemini:gemini-1.5-pro" in ids
        assert "groq:llama-3.3-70b-versatile" in ids
        assert set(get_all_providers()) == {"openai", "anthropic", "gemini", "mistral", "groq"}

    def test_build_adapters_shares_transport(self):
        """Every adapter gets the injected transport"""
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={}))
        adapters = build_adapters(transport=transport, timeout=5.0)
        assert all(a._transport is transport for a in adapters.values())


class TestErrorMessages:
    """Provider error bodies"""

    def test_error_message_field(self):
        """error.message wins over the generic text"""
        response = httpx.Response(401, json={"error": {"message": "Invalid API key"}})
        assert extract_error_message(response, "OpenAI") == "Invalid API key"

    def test_generic_message(self):
        """Unparseable bodies fall back to the status"""
        response = httpx.Response(502, text="<html>bad gateway</html>")
        assert extract_error_message(response, "Groq") == "Groq API error: 502"

    def test_retry_hints(self):
        """RetryInfo and Retry-After are appended"""
        body = {
            "error": {
                "message": "Quota exceeded",
                "details": [
                    {"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": "7s"}
                ],
            }
        }
        response = httpx.Response(429, json=body, headers={"Retry-After": "7"})
        message = extract_error_message(response, "Gemini")
        assert message.startswith("Quota exceeded")
        assert "Suggested retry after 7s." in message
        assert "Retry-After: 7." in message


class TestOpenAIAdapter:
    """Chat completions mapping"""

    @pytest.mark.asyncio
    async def test_send(self):
        """Payload, auth header and usage are mapped"""
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "choices": [{"message": {"role": "assistant", "content": "Hi!"}}],
                    "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
                },
            )

        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("https://api.openai.com/v1/chat/completions").mock(
                side_effect=handler
            )
            response = await OpenAIAdapter().send(
                "gpt-4o",
                USER_HELLO,
                ModelOptions(temperature=0.2, max_tokens=64, system_prompt="Be brief"),
                "sk-test",
            )

        assert captured["auth"] == "Bearer sk-test"
        assert captured["body"] == {
            "model": "gpt-4o",
            "messages": [
                {"role": "system", "content": "Be brief"},
                {"role": "user", "content": "Hello"},
            ],
            "temperature": 0.2,
            "max_tokens": 64,
        }
        assert response.content == "Hi!"
        assert response.usage == TokenUsage(12, 3, 15)
        assert response.provider == "openai"
        assert response.model_id == "openai:gpt-4o"
        assert response.latency_ms is not None and response.latency_ms >= 0
        assert response.estimated_cost == pytest.approx(12 * 0.0025 / 1000 + 3 * 0.01 / 1000)

    @pytest.mark.asyncio
    async def test_missing_usage_is_estimated(self):
        """No usage block means an estimate flagged as such"""
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("https://api.openai.com/v1/chat/completions").mock(
                return_value=httpx.Response(
                    200, json={"choices": [{"message": {"content": "abcdefgh"}}]}
                )
            )
            response = await OpenAIAdapter().send("gpt-4o", USER_HELLO, ModelOptions(), "k")

        assert response.usage.estimated is True
        assert response.usage.completion_tokens == 2
        assert response.usage.prompt_tokens == estimate_tokens("Hello")

    @pytest.mark.asyncio
    async def test_http_error(self):
        """Non-2xx replies raise ProviderError with the provider's message"""
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("https://api.openai.com/v1/chat/completions").mock(
                return_value=httpx.Response(
                    401, json={"error": {"message": "Incorrect API key provided"}}
                )
            )
            with pytest.raises(ProviderError) as exc_info:
                await OpenAIAdapter().send("gpt-4o", USER_HELLO, ModelOptions(), "bad")

        assert exc_info.value.status_code == 401
        assert exc_info.value.provider == "openai"
        assert exc_info.value.message == "Incorrect API key provided"

    @pytest.mark.asyncio
    async def test_connection_error(self):
        """Network failures become ProviderError"""
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("https://api.openai.com/v1/chat/completions").mock(
                side_effect=httpx.ConnectError("refused")
            )
            with pytest.raises(ProviderError, match="Connection error"):
                await OpenAIAdapter().send("gpt-4o", USER_HELLO, ModelOptions(), "k")

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        """A 200 with a non-JSON body is an error"""
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("https://api.openai.com/v1/chat/completions").mock(
                return_value=httpx.Response(200, text="not json")
            )
            with pytest.raises(ProviderError, match="invalid JSON"):
                await OpenAIAdapter().send("gpt-4o", USER_HELLO, ModelOptions(), "k")

    @pytest.mark.asyncio
    async def test_connection_probe(self):
        """test_connection reports the models endpoint status"""
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get("https://api.openai.com/v1/models").mock(
                side_effect=[httpx.Response(200, json={"data": []}), httpx.Response(401)]
            )
            adapter = OpenAIAdapter()
            assert await adapter.test_connection("good") is True
            assert await adapter.test_connection("bad") is False

    @pytest.mark.asyncio
    async def test_connection_probe_never_raises(self):
        """Network failures during a probe report False"""
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get("https://api.groq.com/openai/v1/models").mock(
                side_effect=httpx.ConnectError("down")
            )
            assert await GroqAdapter().test_connection("k") is False


class TestCompatibleAdapters:
    """Mistral and Groq share the chat-completions format"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "adapter_cls,url",
        [
            (MistralAdapter, "https://api.mistral.ai/v1/chat/completions"),
            (GroqAdapter, "https://api.groq.com/openai/v1/chat/completions"),
        ],
    )
    async def test_endpoint(self, adapter_cls, url):
        """Each provider posts to its own base URL"""
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(url).mock(
                return_value=httpx.Response(
                    200, json={"choices": [{"message": {"content": "ok"}}], "usage": {}}
                )
            )
            response = await adapter_cls().send("some-model", USER_HELLO, ModelOptions(), "k")

        assert response.content == "ok"
        assert response.usage == TokenUsage(0, 0, 0)
        assert response.estimated_cost is None


class TestAnthropicAdapter:
    """Messages API mapping"""

    @pytest.mark.asyncio
    async def test_send(self):
        """Headers, system prompt and content blocks are mapped"""
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["headers"] = request.headers
            captured["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "content": [
                        {"type": "text", "text": "Part one. "},
                        {"type": "text", "text": "Part two."},
                    ],
                    "usage": {"input_tokens": 20, "output_tokens": 7},
                },
            )

        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("https://api.anthropic.com/v1/messages").mock(side_effect=handler)
            response = await AnthropicAdapter().send(
                "claude-3-5-sonnet-20241022",
                USER_HELLO,
                ModelOptions(system_prompt="You are terse"),
                "sk-ant-test",
            )

        assert captured["headers"]["x-api-key"] == "sk-ant-test"
        assert captured["headers"]["anthropic-version"] == "2023-06-01"
        assert captured["body"]["system"] == "You are terse"
        assert captured["body"]["messages"] == [{"role": "user", "content": "Hello"}]
        assert captured["body"]["max_tokens"] == 4096
        assert response.content == "Part one. Part two."
        assert response.usage == TokenUsage(20, 7, 27)

    def test_payload_without_system_prompt(self):
        """No system key unless a system prompt is set; system turns become user turns"""
        request = NormalizedRequest((Message("system", "rules"), Message("user", "hi")))
        payload = AnthropicAdapter().build_payload("claude-3-5-haiku-20241022", request)
        assert "system" not in payload
        assert [m["role"] for m in payload["messages"]] == ["user", "user"]

    @pytest.mark.asyncio
    async def test_connection_checks_key_format(self):
        """Anthropic has no cheap probe; the key prefix is checked"""
        adapter = AnthropicAdapter()
        assert await adapter.test_connection("sk-ant-abc") is True
        assert await adapter.test_connection("sk-abc") is False


class TestGeminiAdapter:
    """generateContent mapping"""

    @pytest.mark.asyncio
    async def test_send(self):
        """Key in the query string, roles mapped, usageMetadata read"""
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["key"] = request.url.params.get("key")
            captured["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "candidates": [{"content": {"parts": [{"text": "Bonjour"}]}}],
                    "usageMetadata": {
                        "promptTokenCount": 4,
                        "candidatesTokenCount": 2,
                        "totalTokenCount": 6,
                    },
                },
            )

        messages = [
            Message("user", "Hello"),
            Message("assistant", "Hi"),
            Message("user", "In French?"),
        ]
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(
                host="generativelanguage.googleapis.com",
                path="/v1beta/models/gemini-1.5-flash:generateContent",
            ).mock(side_effect=handler)
            response = await GeminiAdapter().send(
                "gemini-1.5-flash",
                messages,
                ModelOptions(temperature=0.1, max_tokens=100, system_prompt="Translate"),
                "AIza-test",
            )

        assert captured["key"] == "AIza-test"
        body = captured["body"]
        assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
        assert body["generationConfig"] == {"temperature": 0.1, "maxOutputTokens": 100}
        assert body["systemInstruction"] == {"parts": [{"text": "Translate"}]}
        assert response.content == "Bonjour"
        assert response.usage == TokenUsage(4, 2, 6)

    @pytest.mark.asyncio
    async def test_quota_error(self):
        """Quota errors keep the retry hint"""
        body = {
            "error": {
                "message": "Resource exhausted",
                "details": [
                    {"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": "30s"}
                ],
            }
        }
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(
                host="generativelanguage.googleapis.com",
                path="/v1beta/models/gemini-1.5-pro:generateContent",
            ).mock(return_value=httpx.Response(429, json=body))
            with pytest.raises(ProviderError) as exc_info:
                await GeminiAdapter().send("gemini-1.5-pro", USER_HELLO, ModelOptions(), "k")

        assert exc_info.value.status_code == 429
        assert "Suggested retry after 30s." in exc_info.value.message

    def test_empty_candidates(self):
        """A reply without candidates has empty content"""
        assert GeminiAdapter().parse_content({"candidates": []}) == ""
