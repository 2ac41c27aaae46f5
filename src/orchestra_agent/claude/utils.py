"""Utility helpers for the Claude CLI runner."""

from __future__ import annotations

from typing import Mapping

from ..process import build_environment

API_KEY_VAR = "ANTHROPIC_API_KEY"
BASE_URL_VAR = "ANTHROPIC_BASE_URL"


def provider_environment(
    api_key: str | None = None,
    base_url: str | None = None,
    additional: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Return the subprocess environment carrying provider credentials.

    Credentials only travel through the environment so they never show up in a
    process listing.
    """

    overrides: dict[str, str] = dict(additional or {})
    if api_key:
        overrides[API_KEY_VAR] = api_key
    if base_url:
        overrides[BASE_URL_VAR] = base_url
    return build_environment(overrides)


def redact_args(args: tuple[str, ...] | list[str], prompt: str) -> list[str]:
    """Replace the prompt in ``args`` with a length marker for logging."""

    return [f"<prompt:{len(prompt)} chars>" if arg == prompt else arg for arg in args]
