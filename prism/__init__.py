"""
Prism - Multi-Provider LLM Comparison Core
==========================================

Send one prompt to several LLM providers at once, watch each answer's
status as it arrives, cancel or retry individual models, and keep the
provider API keys in a passphrase-encrypted vault.

Security Features:
- API keys only persisted encrypted (PBKDF2-SHA256 + AES-256-GCM)
- Passphrase cached for the session only, never on disk
- Secrets redacted from logs and reprs

Example Usage:
    >>> import asyncio
    >>> from prism import CredentialVault, RunOrchestrator
    >>>
    >>> async def main():
    ...     vault = CredentialVault()
    ...     await vault.unlock("correct horse battery staple")
    ...     await vault.save({"openai": "sk-..."}, "correct horse battery staple")
    ...     orchestrator = RunOrchestrator(vault)
    ...     for response in await orchestrator.run("Explain CRDTs", ["openai:gpt-4o"]):
    ...         print(response.content)
    >>>
    >>> asyncio.run(main())
"""

__version__ = "1.0.0"

from .adapters import (
    ADAPTERS,
    BaseAdapter,
    Message,
    ModelInfo,
    ModelOptions,
    NormalizedRequest,
    NormalizedResponse,
    TokenUsage,
    estimate_tokens,
    format_model_id,
    get_adapter,
    parse_model_id,
)
from .credentials import (
    BlobStore,
    CredentialSet,
    CredentialVault,
    FileBlobStore,
    KeyringBlobStore,
    MemoryBlobStore,
    SessionContext,
    VaultState,
)
from .errors import (
    ConfigurationError,
    CryptoError,
    PrismError,
    ProviderError,
    StorageError,
    TaskStateError,
    TransportError,
    ValidationError,
)
from .orchestrator import (
    ModelTaskStatus,
    RunOrchestrator,
    TaskState,
    TaskStatusStore,
)
from .routing import (
    ContentLength,
    RoutingDecision,
    RoutingInput,
    RoutingRule,
    RuleCondition,
    evaluate,
    route_prompt,
    simulate,
    validate_rule,
)

__all__ = [
    # Version
    "__version__",

    # Adapters
    "ADAPTERS",
    "BaseAdapter",
    "Message",
    "ModelInfo",
    "ModelOptions",
    "NormalizedRequest",
    "NormalizedResponse",
    "TokenUsage",
    "estimate_tokens",
    "format_model_id",
    "get_adapter",
    "parse_model_id",

    # Credential vault
    "BlobStore",
    "CredentialSet",
    "CredentialVault",
    "FileBlobStore",
    "KeyringBlobStore",
    "MemoryBlobStore",
    "SessionContext",
    "VaultState",

    # Errors
    "ConfigurationError",
    "CryptoError",
    "PrismError",
    "ProviderError",
    "StorageError",
    "TaskStateError",
    "TransportError",
    "ValidationError",

    # Orchestrator
    "ModelTaskStatus",
    "RunOrchestrator",
    "TaskState",
    "TaskStatusStore",

    # Routing
    "ContentLength",
    "RoutingDecision",
    "RoutingInput",
    "RoutingRule",
    "RuleCondition",
    "evaluate",
    "route_prompt",
    "simulate",
    "validate_rule",
]
