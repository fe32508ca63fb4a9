"""
Prism command line
==================

Usage:
    prism "Explain CRDTs" -m openai:gpt-4o -m anthropic:claude-3-5-sonnet-20241022
    prism "Refactor this function ..." --preset code      # models from routing rules
    prism --configure                                      # store API keys in the vault
    prism --list-models
    prism --test-connections
    prism --rules "some prompt"                            # show which rule would fire

The vault passphrase is read from PRISM_PASSPHRASE or prompted for.
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import os
import sys

from .adapters import ADAPTERS, get_all_providers, get_provider_models
from .config import Settings, load_user_config, setup_logging
from .credentials import INCORRECT_PASSPHRASE, CredentialVault, default_blob_store
from .errors import PrismError
from .orchestrator import InputValidator, ModelTaskStatus, RunOrchestrator, TaskState
from .presets import PRESET_NAMES, get_preset
from .routing import bucket_content_length, detect_code, route_prompt, rules_to_json
from .storage import RoutingRuleStore

PROVIDER_LABELS = {
    "openai": "OpenAI (GPT-4o, o1)",
    "anthropic": "Anthropic (Claude 3.5 Sonnet, Haiku, Opus)",
    "gemini": "Google (Gemini 1.5, 2.0)",
    "mistral": "Mistral (Mistral Large, Codestral)",
    "groq": "Groq (Fast inference - Llama, Mixtral)",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="prism", description="Compare answers from several LLM providers"
    )
    parser.add_argument("prompt", nargs="?", help="The prompt to send")
    parser.add_argument(
        "--model",
        "-m",
        action="append",
        help="Model id as provider:model (repeatable); default comes from routing rules",
    )
    parser.add_argument("--preset", "-p", choices=PRESET_NAMES, help="Workspace preset")
    parser.add_argument("--system", "-s", help="Override the preset's system prompt")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    parser.add_argument("--configure", action="store_true", help="Configure API keys")
    parser.add_argument("--list-models", action="store_true", help="List available models")
    parser.add_argument(
        "--test-connections", action="store_true", help="Check every stored API key"
    )
    parser.add_argument(
        "--rules", action="store_true", help="Show routing rules and the simulated match"
    )
    return parser


def print_models() -> None:
    print("\nAvailable Models:")
    print("=" * 60)
    for provider in get_all_providers():
        print(f"\n{provider}:")
        for info in get_provider_models(provider):
            print(f"  {provider}:{info.id}")
            print(f"    Name: {info.name}")
            print(
                f"    Cost: ${info.cost_per_1k_input}/1k input, "
                f"${info.cost_per_1k_output}/1k output"
            )


def print_rules(store: RoutingRuleStore, prompt: str | None, preset: str) -> None:
    rules = store.load()
    print(rules_to_json(rules))
    if not prompt:
        return
    decision = route_prompt(rules, prompt, preset)
    bucket = bucket_content_length(len(prompt)).value
    print(
        f"\nInput: preset={preset}, contentLength={bucket}, hasCode={detect_code(prompt)}"
    )
    if decision.matched_rule is None:
        print(f"No rule matched; preset defaults: {', '.join(get_preset(preset).models)}")
    else:
        print(f"Matched '{decision.matched_rule.name}': {', '.join(decision.selected_models)}")


def read_passphrase() -> str:
    return os.environ.get("PRISM_PASSPHRASE") or getpass.getpass("Vault passphrase: ")


async def configure_credentials_interactive(vault: CredentialVault, passphrase: str) -> None:
    """Interactive prompt for provider API keys; saves through the vault."""
    print("\nPrism Credential Configuration\n")
    print("=" * 50)

    updated = dict(vault.credentials or {})
    for provider_id in get_all_providers():
        label = PROVIDER_LABELS.get(provider_id, provider_id)
        status = "configured" if updated.get(provider_id) else "not set"
        print(f"\n{label}: [{status}]")

        response = input(f"Configure {provider_id}? (y/N/clear): ").strip().lower()
        if response == "clear":
            updated.pop(provider_id, None)
            print(f"  -> Cleared {provider_id}")
        elif response == "y":
            api_key = getpass.getpass(f"  Enter API key for {provider_id}: ").strip()
            if api_key:
                updated[provider_id] = api_key
                print(f"  -> Will save {provider_id}")

    await vault.save(updated, passphrase)
    print("\n" + "=" * 50)
    print(f"Configured providers: {vault.configured_providers()}")


async def test_connections(vault: CredentialVault) -> None:
    for provider in get_all_providers():
        credential = vault.get_credential(provider)
        if not credential:
            print(f"{provider:<10} not configured")
            continue
        ok = await ADAPTERS[provider].test_connection(credential)
        print(f"{provider:<10} {'ok' if ok else 'FAILED'}")


def print_status(status: ModelTaskStatus) -> None:
    if status.state is TaskState.SUCCESS and status.response is not None:
        response = status.response
        latency = f"{response.latency_ms:.0f}ms" if response.latency_ms is not None else "n/a"
        print(f"\n[{status.model_id}] ({latency})")
        print("-" * 60)
        print(response.content)
        print("-" * 60)
        usage = response.usage
        approx = " (estimated)" if usage.estimated else ""
        line = f"Tokens: {usage.prompt_tokens} in / {usage.completion_tokens} out{approx}"
        if response.estimated_cost is not None:
            line += f"  ~${response.estimated_cost:.4f}"
        print(line)
    elif status.state is TaskState.ERROR:
        print(f"\n[{status.model_id}] Error: {status.error}")
    else:
        print(f"\n[{status.model_id}] {status.state.value}")


async def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_user_config()
    settings = Settings.from_config(config)
    log_config = config.get("logging")
    setup_logging(args.verbose, log_config if isinstance(log_config, dict) else None)

    preset = args.preset or settings.default_preset
    if preset not in PRESET_NAMES:
        preset = "research"

    if args.list_models:
        print_models()
        return 0

    rule_store = RoutingRuleStore()
    if args.rules:
        print_rules(rule_store, args.prompt, preset)
        return 0

    if not (args.prompt or args.configure or args.test_connections):
        parser.print_help()
        return 0

    vault = CredentialVault(
        default_blob_store(settings.vault_backend), iterations=settings.kdf_iterations
    )
    with vault.session:
        if not await vault.unlock(read_passphrase()):
            print(f"\nError: {INCORRECT_PASSPHRASE}")
            return 1

        try:
            if args.configure:
                passphrase = vault.session.cached_passphrase or ""
                await configure_credentials_interactive(vault, passphrase)
                return 0

            if args.test_connections:
                await test_connections(vault)
                return 0

            is_valid, error = InputValidator.validate_prompt(args.prompt)
            if not is_valid:
                print(f"\nError: {error}")
                return 1

            orchestrator = RunOrchestrator.from_settings(
                vault,
                settings,
                system_prompt=args.system or get_preset(preset).system_prompt,
            )
            if args.model:
                model_ids = list(args.model)
            else:
                decision = orchestrator.select_models(args.prompt, preset, rule_store.load())
                model_ids = list(decision.selected_models)

            if args.verbose:
                orchestrator.subscribe(
                    lambda s: print(f"  {s.model_id}: {s.state.value}", file=sys.stderr)
                )

            responses = await orchestrator.run(args.prompt, model_ids)
            for status in orchestrator.statuses:
                print_status(status)
            return 0 if responses else 1
        except PrismError as e:
            print(f"\nError: {e}")
            return 1
        finally:
            vault.lock()


def run() -> None:
    """Console-script entry point"""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
