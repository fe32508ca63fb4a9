"""
Built-in workspace presets
==========================
A preset bundles a default system prompt with a default model list. The
active preset is also one of the conditions routing rules match on.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Preset:
    name: str
    system_prompt: str
    models: tuple[str, ...]


PRESETS: dict[str, Preset] = {
    "research": Preset(
        name="research",
        system_prompt=(
            "You are a research assistant helping with academic writing, synthesis, "
            "and analysis. Be thorough, cite sources when possible, and structure "
            "your responses clearly."
        ),
        models=("openai:gpt-4o", "anthropic:claude-3-5-sonnet-20241022"),
    ),
    "code": Preset(
        name="code",
        system_prompt=(
            "You are a senior software engineer. Write clean, well-documented code. "
            "Explain your reasoning. Follow best practices and consider edge cases."
        ),
        models=("anthropic:claude-3-5-sonnet-20241022", "openai:gpt-4o"),
    ),
    "operator": Preset(
        name="operator",
        system_prompt=(
            "You are a strategic advisor helping founders and product managers draft "
            "communications, analyze decisions, and structure thoughts. Be concise "
            "and actionable."
        ),
        models=("openai:gpt-4o", "anthropic:claude-3-5-sonnet-20241022"),
    ),
}

PRESET_NAMES = tuple(PRESETS)


def get_preset(name: str) -> Preset:
    """Look up a preset by name; raises KeyError for unknown names."""
    try:
        return PRESETS[name]
    except KeyError:
        raise KeyError(f"Unknown preset: {name!r}") from None
