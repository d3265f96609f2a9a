"""
LLM client abstraction -- provider-agnostic text-to-SQL completion.

Supported providers:
  mock      -- echo back the prompt (for tests / offline dev)
  openai    -- OpenAI Chat Completions
  anthropic -- Anthropic Messages

Provider, keys, model ids, temperature and token budget come from Settings
(env / .env).  SDKs are imported lazily so the ``llm`` extra stays optional.
``complete`` is the awaitable entry point used by the generation loop; the
blocking SDK call runs in a worker thread.
"""
from __future__ import annotations

import asyncio
import importlib
from types import ModuleType
from typing import Callable

from src.core.config import Settings, get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)

SYSTEM_PROMPT = (
    "You are a DuckDB SQL expert. Answer with a single SELECT statement "
    "that uses only the columns and aggregations you are given."
)

_MOCK_ECHO_CHARS = 200


# ── Shared helpers ──────────────────────────────────────

def _require_key(settings: Settings, setting: str) -> str:
    api_key = getattr(settings, setting)
    if not api_key:
        raise RuntimeError(
            f"{setting} is not set.  "
            f"Set {setting.upper()} in your .env file or environment."
        )
    return api_key


def _load_sdk(module: str) -> ModuleType:
    try:
        return importlib.import_module(module)
    except ImportError as exc:
        raise RuntimeError(
            f"The '{module}' package is not installed.  "
            "Run: pip install 'semantic-query-copilot[llm]'"
        ) from exc


# ── Providers ───────────────────────────────────────────

def _call_mock(prompt: str, settings: Settings) -> str:
    logger.info("LLM mock mode -- returning echo")
    return f"[MOCK] {prompt[:_MOCK_ECHO_CHARS]}"


def _call_openai(prompt: str, settings: Settings) -> str:
    """Call OpenAI Chat Completions API."""
    api_key = _require_key(settings, "openai_api_key")
    openai = _load_sdk("openai")

    response = openai.OpenAI(api_key=api_key).chat.completions.create(
        model=settings.openai_model,
        messages=[
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
    )
    return response.choices[0].message.content or ""


def _call_anthropic(prompt: str, settings: Settings) -> str:
    """Call Anthropic Messages API."""
    api_key = _require_key(settings, "anthropic_api_key")
    anthropic = _load_sdk("anthropic")

    response = anthropic.Anthropic(api_key=api_key).messages.create(
        model=settings.anthropic_model,
        max_tokens=settings.llm_max_tokens,
        temperature=settings.llm_temperature,
        system=SYSTEM_PROMPT,
        messages=[{"role": "user", "content": prompt}],
    )
    return "".join(getattr(block, "text", "") for block in response.content or [])


_PROVIDERS: dict[str, Callable[[str, Settings], str]] = {
    "mock": _call_mock,
    "openai": _call_openai,
    "anthropic": _call_anthropic,
}


def available_providers() -> list[str]:
    return list(_PROVIDERS)


# ── Public API ──────────────────────────────────────────

def call_llm(prompt: str, provider: str | None = None) -> str:
    """Send *prompt* to the configured (or overridden) LLM provider.

    Parameters
    ----------
    prompt : str
        The full prompt text.
    provider : str, optional
        Override the provider from settings.  One of: mock, openai, anthropic.

    Raises
    ------
    NotImplementedError
        For an unknown provider name.
    RuntimeError
        When the provider's API key or SDK is missing.
    """
    settings = get_settings()
    name = (provider or settings.llm_provider).lower()

    fn = _PROVIDERS.get(name)
    if fn is None:
        raise NotImplementedError(
            f"LLM provider '{name}' is not supported.  "
            f"Choose from: {', '.join(_PROVIDERS)}"
        )

    logger.info("Calling LLM provider=%s  prompt_len=%d", name, len(prompt))
    text = fn(prompt, settings)
    if name != "mock":
        logger.info("LLM provider=%s response (%d chars)", name, len(text))
    return text


async def complete(prompt: str, provider: str | None = None) -> str:
    """Awaitable ``call_llm``; the SDK call runs off the event loop."""
    return await asyncio.to_thread(call_llm, prompt, provider)

