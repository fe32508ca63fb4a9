"""
Provider Adapters
=================
One adapter per LLM backend. Each adapter turns the normalized request
(role-tagged messages plus options) into that provider's wire format,
performs exactly one HTTPS call and maps the reply back to a
NormalizedResponse.

Adapters are stateless: the only things held on an instance are the
transport and timeout they were constructed with, so concurrent calls
never interfere with one another.

Model identifiers used by the rest of the system have the form
``"<provider>:<model>"``, e.g. ``"anthropic:claude-3-5-sonnet-20241022"``.
"""

from __future__ import annotations

import logging
import math
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from .errors import ProviderError

logger = logging.getLogger(__name__)

ROLES = ("user", "assistant", "system")
DEFAULT_HTTP_TIMEOUT = 120.0


def estimate_tokens(text: str) -> int:
    """Rough token estimate (~4 chars per token). Advisory only."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def parse_model_id(full_model_id: str) -> tuple[str, str]:
    """Split ``provider:model``; the model part may itself contain colons."""
    provider, _, model = full_model_id.partition(":")
    return provider, model or provider


def format_model_id(provider: str, model: str) -> str:
    return f"{provider}:{model}"


@dataclass(frozen=True)
class Message:
    """A single role-tagged chat message"""

    role: str
    content: str

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Invalid message role: {self.role!r}")

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ModelOptions:
    """Generation options shared by every provider"""

    temperature: float = 0.7
    max_tokens: int = 4096
    system_prompt: str | None = None


@dataclass(frozen=True)
class NormalizedRequest:
    """Immutable provider-neutral request"""

    messages: tuple[Message, ...]
    options: ModelOptions = field(default_factory=ModelOptions)

    def __post_init__(self) -> None:
        object.__setattr__(self, "messages", tuple(self.messages))

    @classmethod
    def from_prompt(
        cls, prompt: str, options: ModelOptions | None = None
    ) -> NormalizedRequest:
        return cls((Message("user", prompt),), options or ModelOptions())

    def prompt_text(self) -> str:
        parts = [m.content for m in self.messages]
        if self.options.system_prompt:
            parts.insert(0, self.options.system_prompt)
        return "\n".join(parts)


def _coerce_count(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        count = int(value)
    except (TypeError, ValueError):
        return 0
    return max(count, 0)


@dataclass(frozen=True)
class TokenUsage:
    """Normalized token counters"""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated: bool = False

    @classmethod
    def from_counts(cls, prompt: Any, completion: Any, total: Any = None) -> TokenUsage:
        prompt_tokens = _coerce_count(prompt)
        completion_tokens = _coerce_count(completion)
        if total is None:
            total_tokens = prompt_tokens + completion_tokens
        else:
            total_tokens = _coerce_count(total)
        return cls(prompt_tokens, completion_tokens, total_tokens)

    @classmethod
    def estimate(cls, prompt_text: str, completion_text: str) -> TokenUsage:
        prompt_tokens = estimate_tokens(prompt_text)
        completion_tokens = estimate_tokens(completion_text)
        return cls(
            prompt_tokens,
            completion_tokens,
            prompt_tokens + completion_tokens,
            estimated=True,
        )


@dataclass(frozen=True)
class NormalizedResponse:
    """Provider-neutral response"""

    content: str
    usage: TokenUsage
    provider: str
    model: str
    latency_ms: float | None = None
    estimated_cost: float | None = None
    is_mock: bool = False

    @property
    def model_id(self) -> str:
        return format_model_id(self.provider, self.model)


@dataclass(frozen=True)
class ModelInfo:
    """Catalog entry for a model offered by a provider"""

    id: str
    name: str
    cost_per_1k_input: float = 0.0
    cost_per_1k_output: float = 0.0

    def estimate_cost(self, usage: TokenUsage) -> float:
        cost = (
            usage.prompt_tokens * self.cost_per_1k_input
            + usage.completion_tokens * self.cost_per_1k_output
        ) / 1000
        return round(cost, 6)


def extract_error_message(response: httpx.Response, label: str) -> str:
    """Best available error message for a non-success response."""
    message = f"{label} API error: {response.status_code}"

    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_info = payload.get("error")
        if isinstance(error_info, dict):
            error_message = error_info.get("message")
            if isinstance(error_message, str) and error_message:
                message = error_message
            details = error_info.get("details", [])
            if isinstance(details, list):
                for detail in details:
                    if (
                        isinstance(detail, dict)
                        and detail.get("@type")
                        == "type.googleapis.com/google.rpc.RetryInfo"
                    ):
                        retry_delay = detail.get("retryDelay")
                        if retry_delay:
                            message = f"{message} Suggested retry after {retry_delay}."
                        break
        elif isinstance(error_info, str) and error_info:
            message = error_info

    retry_after = response.headers.get("Retry-After")
    if retry_after:
        message = f"{message} Retry-After: {retry_after}."

    return message


@dataclass(frozen=True)
class _Target:
    url: str
    headers: dict[str, str]
    params: dict[str, str] = field(default_factory=dict)


class BaseAdapter(ABC):
    """
    Shared adapter contract: send / test_connection / list_models.

    Subclasses describe *where* to send (``_target``), *what* to send
    (``build_payload``) and how to read the reply (``parse_content``,
    ``parse_usage``). The HTTP round trip and error mapping live here.
    """

    MODELS: tuple[ModelInfo, ...] = ()

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = DEFAULT_HTTP_TIMEOUT,
    ) -> None:
        self._transport = transport
        self._timeout = timeout

    @property
    @abstractmethod
    def provider_name(self) -> str:
        pass

    @property
    def display_name(self) -> str:
        return self.provider_name.capitalize()

    @abstractmethod
    def _target(self, model: str, credential: str) -> _Target:
        pass

    @abstractmethod
    def build_payload(self, model: str, request: NormalizedRequest) -> dict[str, Any]:
        """Translate a normalized request into the provider's JSON body"""

    @abstractmethod
    def parse_content(self, data: dict[str, Any]) -> str:
        pass

    @abstractmethod
    def parse_usage(self, data: dict[str, Any]) -> TokenUsage | None:
        """Provider-reported usage, or None when the reply carries none"""

    @abstractmethod
    async def test_connection(self, credential: str) -> bool:
        """Cheapest available credential check. Never raises."""

    def list_models(self) -> list[ModelInfo]:
        return list(self.MODELS)

    def get_model_info(self, model: str) -> ModelInfo | None:
        for info in self.MODELS:
            if info.id == model:
                return info
        return None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    async def send(
        self,
        model: str,
        messages: Sequence[Message],
        options: ModelOptions,
        credential: str,
    ) -> NormalizedResponse:
        request = NormalizedRequest(tuple(messages), options)
        payload = self.build_payload(model, request)
        target = self._target(model, credential)

        start_time = time.perf_counter()
        data = await self._post(target, payload)
        latency = (time.perf_counter() - start_time) * 1000

        content = self.parse_content(data)
        usage = self.parse_usage(data)
        if usage is None:
            usage = TokenUsage.estimate(request.prompt_text(), content)

        info = self.get_model_info(model)
        return NormalizedResponse(
            content=content,
            usage=usage,
            provider=self.provider_name,
            model=model,
            latency_ms=latency,
            estimated_cost=info.estimate_cost(usage) if info else None,
        )

    async def _post(self, target: _Target, payload: dict[str, Any]) -> dict[str, Any]:
        async with self._client() as client:
            try:
                response = await client.post(
                    target.url,
                    headers=target.headers,
                    params=target.params or None,
                    json=payload,
                )
            except httpx.TimeoutException as e:
                raise ProviderError(self.provider_name, f"Timeout error: {e}") from e
            except httpx.RequestError as e:
                raise ProviderError(self.provider_name, f"Connection error: {e}") from e

        if response.is_error:
            raise ProviderError(
                self.provider_name,
                extract_error_message(response, self.display_name),
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(
                self.provider_name,
                f"{self.display_name} API returned invalid JSON",
                status_code=response.status_code,
            ) from e

        if not isinstance(data, dict):
            raise ProviderError(
                self.provider_name,
                f"{self.display_name} API returned an unexpected payload",
                status_code=response.status_code,
            )
        return data

    async def _probe(self, url: str, headers: Mapping[str, str] | None = None,
                     params: Mapping[str, str] | None = None) -> bool:
        try:
            async with self._client() as client:
                response = await client.get(url, headers=headers, params=params)
            return response.is_success
        except Exception as e:
            logger.debug(f"Connection test failed for {self.provider_name}: {type(e).__name__}")
            return False


class OpenAICompatibleAdapter(BaseAdapter):
    """Chat-completions style API with bearer-token auth"""

    BASE_URL = "https://api.openai.com/v1"

    def _target(self, model: str, credential: str) -> _Target:
        return _Target(
            url=f"{self.BASE_URL}/chat/completions",
            headers={
                "Authorization": f"Bearer {credential}",
                "Content-Type": "application/json",
            },
        )

    def build_payload(self, model: str, request: NormalizedRequest) -> dict[str, Any]:
        messages: list[dict[str, str]] = []
        if request.options.system_prompt:
            messages.append({"role": "system", "content": request.options.system_prompt})
        messages.extend(m.to_dict() for m in request.messages)
        return {
            "model": model,
            "messages": messages,
            "temperature": request.options.temperature,
            "max_tokens": request.options.max_tokens,
        }

    def parse_content(self, data: dict[str, Any]) -> str:
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            return ""
        first = choices[0]
        if not isinstance(first, dict):
            return ""
        message = first.get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            return message["content"]
        return ""

    def parse_usage(self, data: dict[str, Any]) -> TokenUsage | None:
        usage = data.get("usage")
        if not isinstance(usage, dict):
            return None
        return TokenUsage.from_counts(
            usage.get("prompt_tokens"),
            usage.get("completion_tokens"),
            usage.get("total_tokens"),
        )

    async def test_connection(self, credential: str) -> bool:
        return await self._probe(
            f"{self.BASE_URL}/models",
            headers={"Authorization": f"Bearer {credential}"},
        )


class OpenAIAdapter(OpenAICompatibleAdapter):
    """OpenAI chat completions"""

    MODELS = (
        ModelInfo("gpt-4o", "GPT-4o", 0.0025, 0.01),
        ModelInfo("gpt-4o-mini", "GPT-4o Mini", 0.00015, 0.0006),
        ModelInfo("gpt-4-turbo", "GPT-4 Turbo", 0.01, 0.03),
        ModelInfo("o1-preview", "o1 Preview", 0.015, 0.06),
        ModelInfo("o1-mini", "o1 Mini", 0.003, 0.012),
    )

    @property
    def provider_name(self) -> str:
        return "openai"

    @property
    def display_name(self) -> str:
        return "OpenAI"


class MistralAdapter(OpenAICompatibleAdapter):
    """Mistral AI (OpenAI-compatible endpoint)"""

    BASE_URL = "https://api.mistral.ai/v1"
    MODELS = (
        ModelInfo("mistral-large-latest", "Mistral Large", 0.002, 0.006),
        ModelInfo("mistral-small-latest", "Mistral Small", 0.0002, 0.0006),
        ModelInfo("codestral-latest", "Codestral", 0.0003, 0.0009),
    )

    @property
    def provider_name(self) -> str:
        return "mistral"


class GroqAdapter(OpenAICompatibleAdapter):
    """Groq fast inference (OpenAI-compatible endpoint)"""

    BASE_URL = "https://api.groq.com/openai/v1"
    MODELS = (
        ModelInfo("llama-3.3-70b-versatile", "Llama 3.3 70B", 0.00059, 0.00079),
        ModelInfo("llama-3.1-8b-instant", "Llama 3.1 8B Instant", 0.00005, 0.00008),
        ModelInfo("mixtral-8x7b-32768", "Mixtral 8x7B", 0.00024, 0.00024),
    )

    @property
    def provider_name(self) -> str:
        return "groq"


class AnthropicAdapter(BaseAdapter):
    """Anthropic Messages API"""

    BASE_URL = "https://api.anthropic.com/v1"
    API_VERSION = "2023-06-01"
    MODELS = (
        ModelInfo("claude-3-5-sonnet-20241022", "Claude 3.5 Sonnet", 0.003, 0.015),
        ModelInfo("claude-3-5-haiku-20241022", "Claude 3.5 Haiku", 0.0008, 0.004),
        ModelInfo("claude-3-opus-20240229", "Claude 3 Opus", 0.015, 0.075),
    )

    @property
    def provider_name(self) -> str:
        return "anthropic"

    def _target(self, model: str, credential: str) -> _Target:
        return _Target(
            url=f"{self.BASE_URL}/messages",
            headers={
                "x-api-key": credential,
                "anthropic-version": self.API_VERSION,
                "Content-Type": "application/json",
            },
        )

    def build_payload(self, model: str, request: NormalizedRequest) -> dict[str, Any]:
        # The Messages API only accepts user/assistant turns
        messages = [
            {
                "role": "user" if m.role == "system" else m.role,
                "content": m.content,
            }
            for m in request.messages
        ]
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": request.options.max_tokens,
            "temperature": request.options.temperature,
            "messages": messages,
        }
        if request.options.system_prompt:
            payload["system"] = request.options.system_prompt
        return payload

    def parse_content(self, data: dict[str, Any]) -> str:
        blocks = data.get("content")
        if not isinstance(blocks, list):
            return ""
        return "".join(
            block["text"]
            for block in blocks
            if isinstance(block, dict) and isinstance(block.get("text"), str)
        )

    def parse_usage(self, data: dict[str, Any]) -> TokenUsage | None:
        usage = data.get("usage")
        if not isinstance(usage, dict):
            return None
        return TokenUsage.from_counts(usage.get("input_tokens"), usage.get("output_tokens"))

    async def test_connection(self, credential: str) -> bool:
        # No lightweight endpoint; validate the key format instead
        return isinstance(credential, str) and credential.startswith("sk-ant-")


class GeminiAdapter(BaseAdapter):
    """Google Gemini generateContent API"""

    BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
    MODELS = (
        ModelInfo("gemini-1.5-pro", "Gemini 1.5 Pro", 0.00125, 0.005),
        ModelInfo("gemini-1.5-flash", "Gemini 1.5 Flash", 0.000075, 0.0003),
        ModelInfo("gemini-2.0-flash-exp", "Gemini 2.0 Flash"),
    )

    @property
    def provider_name(self) -> str:
        return "gemini"

    def _target(self, model: str, credential: str) -> _Target:
        return _Target(
            url=f"{self.BASE_URL}/models/{model}:generateContent",
            headers={"Content-Type": "application/json"},
            params={"key": credential},
        )

    def build_payload(self, model: str, request: NormalizedRequest) -> dict[str, Any]:
        contents = [
            {
                "role": "model" if m.role == "assistant" else "user",
                "parts": [{"text": m.content}],
            }
            for m in request.messages
        ]
        payload: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": request.options.temperature,
                "maxOutputTokens": request.options.max_tokens,
            },
        }
        if request.options.system_prompt:
            payload["systemInstruction"] = {
                "parts": [{"text": request.options.system_prompt}]
            }
        return payload

    def parse_content(self, data: dict[str, Any]) -> str:
        candidates = data.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            return ""
        content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
        if not isinstance(content, dict):
            return ""
        parts = content.get("parts")
        if not isinstance(parts, list):
            return ""
        return "".join(
            part["text"]
            for part in parts
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        )

    def parse_usage(self, data: dict[str, Any]) -> TokenUsage | None:
        usage = data.get("usageMetadata")
        if not isinstance(usage, dict):
            return None
        return TokenUsage.from_counts(
            usage.get("promptTokenCount"),
            usage.get("candidatesTokenCount"),
            usage.get("totalTokenCount"),
        )

    async def test_connection(self, credential: str) -> bool:
        return await self._probe(f"{self.BASE_URL}/models", params={"key": credential})


ADAPTER_CLASSES: tuple[type[BaseAdapter], ...] = (
    OpenAIAdapter,
    AnthropicAdapter,
    GeminiAdapter,
    MistralAdapter,
    GroqAdapter,
)


def build_adapters(
    transport: httpx.AsyncBaseTransport | None = None,
    timeout: float | None = DEFAULT_HTTP_TIMEOUT,
) -> dict[str, BaseAdapter]:
    """Instantiate one adapter per supported provider."""
    adapters: dict[str, BaseAdapter] = {}
    for adapter_cls in ADAPTER_CLASSES:
        adapter = adapter_cls(transport=transport, timeout=timeout)
        adapters[adapter.provider_name] = adapter
    return adapters


ADAPTERS: dict[str, BaseAdapter] = build_adapters()


def get_adapter(provider: str) -> BaseAdapter | None:
    return ADAPTERS.get(provider)


def get_all_providers() -> list[str]:
    return list(ADAPTERS)


def get_provider_models(provider: str) -> list[ModelInfo]:
    adapter = ADAPTERS.get(provider)
    return adapter.list_models() if adapter else []


def known_model_ids(adapters: Mapping[str, BaseAdapter] | None = None) -> list[str]:
    """Every ``provider:model`` id in the catalog, in registry order."""
    registry = ADAPTERS if adapters is None else adapters
    return [
        format_model_id(provider, info.id)
        for provider, adapter in registry.items()
        for info in adapter.list_models()
    ]
