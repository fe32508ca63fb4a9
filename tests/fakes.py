import asyncio
from typing import Any

from prism.adapters import (
    BaseAdapter,
    ModelInfo,
    NormalizedRequest,
    NormalizedResponse,
    TokenUsage,
    _Target,
)


class FakeAdapter(BaseAdapter):
    """In-memory adapter with a configurable delay and failure"""

    def __init__(
        self,
        provider: str,
        delay: float = 0.0,
        fail: Exception | None = None,
        fail_times: int | None = None,
        content: str = "ok",
    ) -> None:
        super().__init__()
        self._provider = provider
        self.delay = delay
        self.fail = fail
        self.fail_times = fail_times
        self.content = content
        self.calls = 0
        self.prompts: list[str] = []
        self.credentials: list[str] = []
        self.started = asyncio.Event()
        self.MODELS = (ModelInfo("m", "Fake Model"),)

    @property
    def provider_name(self) -> str:
        return self._provider

    def _target(self, model: str, credential: str) -> _Target:
        return _Target(url="https://fake.invalid", headers={})

    def build_payload(self, model: str, request: NormalizedRequest) -> dict[str, Any]:
        return {}

    def parse_content(self, data: dict[str, Any]) -> str:
        return ""

    def parse_usage(self, data: dict[str, Any]) -> TokenUsage | None:
        return None

    async def test_connection(self, credential: str) -> bool:
        return True

    async def send(self, model, messages, options, credential):
        self.calls += 1
        self.prompts.append(messages[-1].content)
        self.credentials.append(credential)
        self.started.set()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail is not None and (self.fail_times is None or self.calls <= self.fail_times):
            raise self.fail
        return NormalizedResponse(
            content=f"{self.content} from {self._provider}",
            usage=TokenUsage.from_counts(3, 5),
            provider=self._provider,
            model=model,
            latency_ms=self.delay * 1000,
        )
