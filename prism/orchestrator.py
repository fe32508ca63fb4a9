"""
Prism Run Orchestrator
======================
Sends one prompt to several models at once and tracks every model's
participation ("task") through a small state machine:

    pending -> running -> success | error | cancelled

Features:
- Parallel fan-out with a single join point: ``run`` resolves only when
  every task is terminal. Partial results are visible earlier through
  status notifications (``subscribe``).
- Cancel one task or all of them; a result that arrives after
  cancellation is dropped.
- Manual retry of a single task, re-using the last prompt.
- Missing credentials fail the task immediately, without a network call.
- Optional per-task timeout.

Status records live in a TaskStatusStore and change only through its
``apply`` method. Each launch gets a fresh attempt number, and ``apply``
ignores transitions from any attempt other than the current one, so a
stale or cancelled attempt can never overwrite a newer status.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from enum import Enum
from typing import Protocol

from .adapters import (
    ADAPTERS,
    BaseAdapter,
    Message,
    ModelOptions,
    NormalizedResponse,
    parse_model_id,
)
from .config import DEFAULT_MAX_TOKENS, DEFAULT_TASK_TIMEOUT, DEFAULT_TEMPERATURE, Settings
from .errors import ConfigurationError, ProviderError, TaskStateError
from .presets import get_preset
from .routing import RoutingDecision, RoutingRule, route_prompt

logger = logging.getLogger(__name__)

NO_CREDENTIAL_MESSAGE = "No API key configured"


class TaskState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({TaskState.SUCCESS, TaskState.ERROR, TaskState.CANCELLED})

# Transitions allowed within one attempt
ALLOWED_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.PENDING: frozenset({TaskState.RUNNING, TaskState.ERROR, TaskState.CANCELLED}),
    TaskState.RUNNING: frozenset({TaskState.SUCCESS, TaskState.ERROR, TaskState.CANCELLED}),
    TaskState.SUCCESS: frozenset(),
    TaskState.ERROR: frozenset(),
    TaskState.CANCELLED: frozenset(),
}


class InputValidator:
    """Prompt checks and log-safe text"""

    MAX_PROMPT_LENGTH = 500000  # 500k chars max

    @classmethod
    def validate_prompt(cls, prompt: str) -> tuple[bool, str]:
        if not prompt or not prompt.strip():
            return False, "Invalid prompt: must be a non-empty string"

        if len(prompt) > cls.MAX_PROMPT_LENGTH:
            return False, f"Prompt exceeds maximum length of {cls.MAX_PROMPT_LENGTH}"

        return True, ""

    @classmethod
    def sanitize_for_logging(cls, text: str, max_len: int = 100) -> str:
        """Sanitize text for safe logging (no sensitive data)"""
        if not text:
            return ""
        # Redact before truncating so a cut key can't slip through
        sanitized = re.sub(
            r"(sk-|sk-ant-|AIza|api[_-]?key[=:]?\s*|key=|bearer\s+)[a-zA-Z0-9\-_.]{8,}",
            "[REDACTED]",
            text,
            flags=re.IGNORECASE,
        )
        truncated = sanitized[:max_len]
        return truncated + ("..." if len(sanitized) > max_len else "")


@dataclass(frozen=True)
class ModelTaskStatus:
    """Immutable snapshot of one task's status"""

    model_id: str
    provider: str
    model: str
    state: TaskState = TaskState.PENDING
    attempt: int = 0
    retries: int = 0
    response: NormalizedResponse | None = None
    error: str | None = None
    can_retry: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


StatusListener = Callable[[ModelTaskStatus], None]


class TaskStatusStore:
    """
    Status records keyed by model id, in launch order.

    ``apply`` is the only way a record changes. It accepts:
    - a transition of the current attempt allowed by ALLOWED_TRANSITIONS;
    - a newer attempt entering ``pending`` once the current one is terminal.
    Anything else (stale attempt, late result after cancel) is rejected.
    """

    def __init__(self) -> None:
        self._statuses: dict[str, ModelTaskStatus] = {}
        self._listeners: list[StatusListener] = []

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def reset(self, entries: Iterable[tuple[str, int]]) -> None:
        """Replace all records with fresh pending ones."""
        self._statuses = {}
        for model_id, attempt in entries:
            provider, model = parse_model_id(model_id)
            status = ModelTaskStatus(model_id, provider, model, attempt=attempt)
            self._statuses[model_id] = status
            self._notify(status)

    def clear(self) -> None:
        self._statuses = {}

    def get(self, model_id: str) -> ModelTaskStatus | None:
        return self._statuses.get(model_id)

    def snapshot(self) -> list[ModelTaskStatus]:
        return list(self._statuses.values())

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._statuses

    def __len__(self) -> int:
        return len(self._statuses)

    def apply(
        self,
        model_id: str,
        attempt: int,
        state: TaskState,
        *,
        response: NormalizedResponse | None = None,
        error: str | None = None,
        can_retry: bool = False,
    ) -> bool:
        """Apply one transition; returns False when it was rejected."""
        current = self._statuses.get(model_id)
        if current is None:
            return False

        if attempt == current.attempt:
            if state not in ALLOWED_TRANSITIONS[current.state]:
                return False
            updated = replace(
                current,
                state=state,
                response=response if state is TaskState.SUCCESS else None,
                error=error if state is TaskState.ERROR else None,
                can_retry=can_retry if state is TaskState.ERROR else False,
            )
        elif attempt > current.attempt and current.is_terminal and state is TaskState.PENDING:
            updated = replace(
                current,
                state=state,
                attempt=attempt,
                retries=current.retries + 1,
                response=None,
                error=None,
                can_retry=False,
            )
        else:
            return False

        self._statuses[model_id] = updated
        self._notify(updated)
        return True

    def _notify(self, status: ModelTaskStatus) -> None:
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as e:
                logger.error(f"Status listener failed for {status.model_id}: {e}")


class CredentialSource(Protocol):
    def get_credential(self, provider: str) -> str | None: ...


@dataclass
class TaskHandle:
    """Cancellation handle owned by the task record it was launched for"""

    model_id: str
    attempt: int
    task: asyncio.Task[NormalizedResponse | None]

    def cancel(self) -> bool:
        return self.task.cancel()

    @property
    def done(self) -> bool:
        return self.task.done()


class RunOrchestrator:
    """
    Multi-model run orchestrator.

    Example:
        >>> orchestrator = RunOrchestrator(vault, system_prompt="Be brief")
        >>> responses = await orchestrator.run("Explain RAID 5", [
        ...     "openai:gpt-4o", "anthropic:claude-3-5-sonnet-20241022"])
    """

    def __init__(
        self,
        credentials: CredentialSource | Mapping[str, str],
        adapters: Mapping[str, BaseAdapter] | None = None,
        *,
        system_prompt: str | None = None,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        task_timeout: float | None = DEFAULT_TASK_TIMEOUT,
        on_response: Callable[[NormalizedResponse], None] | None = None,
    ) -> None:
        self._credentials = credentials
        self._adapters: Mapping[str, BaseAdapter] = ADAPTERS if adapters is None else adapters
        self.system_prompt = system_prompt
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.task_timeout = task_timeout
        self.on_response = on_response

        self._store = TaskStatusStore()
        self._handles: dict[str, TaskHandle] = {}
        self._attempts = itertools.count(1)
        self._last_prompt: str | None = None

    @classmethod
    def from_settings(
        cls,
        credentials: CredentialSource | Mapping[str, str],
        settings: Settings,
        **kwargs,
    ) -> RunOrchestrator:
        kwargs.setdefault("temperature", settings.temperature)
        kwargs.setdefault("max_tokens", settings.max_tokens)
        kwargs.setdefault("task_timeout", settings.task_timeout)
        return cls(credentials, **kwargs)

    # Status access

    @property
    def statuses(self) -> list[ModelTaskStatus]:
        return self._store.snapshot()

    def get_status(self, model_id: str) -> ModelTaskStatus | None:
        return self._store.get(model_id)

    @property
    def is_running(self) -> bool:
        return any(not s.is_terminal for s in self._store.snapshot())

    @property
    def last_prompt(self) -> str | None:
        return self._last_prompt

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register for status change notifications; returns an unsubscribe callable."""
        return self._store.subscribe(listener)

    # Model selection

    def select_models(
        self, prompt: str, preset: str, rules: Sequence[RoutingRule]
    ) -> RoutingDecision:
        """
        Models for a prompt: the first matching routing rule, otherwise the
        preset's defaults (reported with ``matched_rule=None``).
        """
        decision = route_prompt(rules, prompt, preset)
        if decision.matched_rule is not None:
            logger.info(f"Routing rule '{decision.matched_rule.name}' matched")
            return decision
        return RoutingDecision(None, get_preset(preset).models)

    # Operations

    async def run(self, prompt: str, model_ids: Sequence[str]) -> list[NormalizedResponse]:
        """
        Run the prompt against every model concurrently.

        Returns the successful responses in model-id order, once every task
        has reached a terminal state.
        """
        if not model_ids:
            return []

        unique_ids = list(dict.fromkeys(model_ids))
        if len(unique_ids) != len(model_ids):
            logger.warning("Duplicate model ids in run request were ignored")

        self._cancel_handles()
        self._last_prompt = prompt
        entries = [(model_id, next(self._attempts)) for model_id in unique_ids]
        self._store.reset(entries)

        logger.info(f"Starting run across {len(entries)} model(s)")
        handles = [self._launch(model_id, prompt, attempt) for model_id, attempt in entries]
        results = await asyncio.gather(*(h.task for h in handles), return_exceptions=True)

        responses = [r for r in results if isinstance(r, NormalizedResponse)]
        logger.info(f"Run finished: {len(responses)}/{len(entries)} succeeded")
        return responses

    def cancel(self, model_id: str | None = None) -> None:
        """Cancel one task, or every non-terminal task when no id is given."""
        if model_id is not None:
            targets = [model_id]
        else:
            targets = [s.model_id for s in self._store.snapshot()]

        for target in targets:
            status = self._store.get(target)
            if status is None or status.is_terminal:
                continue
            self._store.apply(target, status.attempt, TaskState.CANCELLED)
            handle = self._handles.get(target)
            if handle is not None and handle.attempt == status.attempt:
                handle.cancel()
            logger.info(f"Cancelled {target}")

    async def retry(self, model_id: str, prompt: str | None = None) -> NormalizedResponse | None:
        """Re-run one finished task; defaults to the last run's prompt."""
        status = self._store.get(model_id)
        if status is None:
            raise TaskStateError(f"Unknown task: {model_id}")
        if not status.is_terminal:
            raise TaskStateError(f"Task {model_id} is still {status.state.value}")

        prompt = prompt if prompt is not None else self._last_prompt
        if prompt is None:
            raise TaskStateError("No prompt available to retry")

        attempt = next(self._attempts)
        self._store.apply(model_id, attempt, TaskState.PENDING)
        logger.info(f"Retrying {model_id}")

        handle = self._launch(model_id, prompt, attempt)
        (result,) = await asyncio.gather(handle.task, return_exceptions=True)
        return result if isinstance(result, NormalizedResponse) else None

    def reset(self) -> None:
        """Cancel everything in flight and forget all task state."""
        self._cancel_handles()
        self._store.clear()

    # Internals

    def _cancel_handles(self) -> None:
        for handle in self._handles.values():
            if not handle.done:
                handle.cancel()
        self._handles.clear()

    def _launch(self, model_id: str, prompt: str, attempt: int) -> TaskHandle:
        task = asyncio.create_task(
            self._execute(model_id, prompt, attempt),
            name=f"prism:{model_id}#{attempt}",
        )
        handle = TaskHandle(model_id, attempt, task)
        self._handles[model_id] = handle
        return handle

    def _lookup_credential(self, provider: str) -> str | None:
        if isinstance(self._credentials, Mapping):
            return self._credentials.get(provider)
        return self._credentials.get_credential(provider)

    def _resolve(self, provider: str) -> tuple[BaseAdapter, str]:
        adapter = self._adapters.get(provider)
        credential = self._lookup_credential(provider)
        if adapter is None or not credential:
            raise ConfigurationError(NO_CREDENTIAL_MESSAGE)
        return adapter, credential

    async def _send(
        self, adapter: BaseAdapter, model: str, prompt: str, credential: str
    ) -> NormalizedResponse:
        options = ModelOptions(
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            system_prompt=self.system_prompt,
        )
        call = adapter.send(model, [Message("user", prompt)], options, credential)
        if self.task_timeout is None:
            return await call
        return await asyncio.wait_for(call, timeout=self.task_timeout)

    async def _execute(
        self, model_id: str, prompt: str, attempt: int
    ) -> NormalizedResponse | None:
        provider, model = parse_model_id(model_id)
        store = self._store

        try:
            adapter, credential = self._resolve(provider)
        except ConfigurationError as e:
            logger.warning(f"{model_id}: {e}")
            store.apply(model_id, attempt, TaskState.ERROR, error=str(e), can_retry=True)
            return None

        if not store.apply(model_id, attempt, TaskState.RUNNING):
            # Cancelled or superseded before it started
            return None

        try:
            response = await self._send(adapter, model, prompt, credential)
        except asyncio.CancelledError:
            store.apply(model_id, attempt, TaskState.CANCELLED)
            raise
        except ProviderError as e:
            logger.warning(
                f"{model_id} failed: {InputValidator.sanitize_for_logging(e.message)}"
            )
            store.apply(model_id, attempt, TaskState.ERROR, error=e.message, can_retry=True)
            return None
        except asyncio.TimeoutError:
            message = f"Request timed out after {self.task_timeout:g}s"
            logger.warning(f"{model_id}: {message}")
            store.apply(model_id, attempt, TaskState.ERROR, error=message, can_retry=True)
            return None
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(
                f"Unexpected error from {model_id}: "
                f"{InputValidator.sanitize_for_logging(message)}"
            )
            store.apply(model_id, attempt, TaskState.ERROR, error=message, can_retry=True)
            return None

        if not store.apply(model_id, attempt, TaskState.SUCCESS, response=response):
            logger.debug(f"Discarding late result for {model_id}")
            return None

        if self.on_response is not None:
            try:
                self.on_response(response)
            except Exception as e:
                logger.error(f"on_response callback failed for {model_id}: {e}")
        return response
