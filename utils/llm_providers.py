"""
Thin adapter layer over LLM provider SDKs (OpenAI, Anthropic).

Used only by the two opaque extraction steps: order detection in synced
emails and merchant service-info lookup.  Both ask for JSON, so the
interface is a single ``generate`` call with an optional output schema.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from config.settings import config

logger = logging.getLogger(__name__)

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def parse_json_reply(text: str) -> Dict[str, Any]:
    """Pull the first JSON object out of a model reply; ``{}`` if none parses."""
    match = _JSON_OBJECT_RE.search(text or "")
    if not match:
        return {}
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        logger.warning("LLM did not return valid JSON; ignoring reply")
        return {}
    return data if isinstance(data, dict) else {}


def _schema_instruction(output_schema: Optional[Dict[str, Any]]) -> str:
    if output_schema is None:
        return ""
    return (
        f"\n\nRespond ONLY with valid JSON matching this schema:\n"
        f"{json.dumps(output_schema, indent=2)}"
    )


class BaseLLMProvider(ABC):
    """Common interface that every concrete provider implements."""

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        temperature: float = 0.3,
        model: str | None = None,
        max_tokens: int = 1024,
        output_schema: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any] | str:
        ...


# ═══════════════════════════════════════════════════════════════════════════════
# OpenAI
# ═══════════════════════════════════════════════════════════════════════════════


class OpenAIProvider(BaseLLMProvider):
    def __init__(self, api_key: str, default_model: str = "gpt-4o"):
        from openai import AsyncOpenAI

        self.client = AsyncOpenAI(api_key=api_key)
        self.default_model = default_model

    async def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        temperature: float = 0.3,
        model: str | None = None,
        max_tokens: int = 1024,
        output_schema: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any] | str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt + _schema_instruction(output_schema)})

        kwargs: Dict[str, Any] = {}
        if output_schema is not None:
            kwargs["response_format"] = {"type": "json_object"}

        response = await self.client.chat.completions.create(
            model=model or self.default_model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs,
        )
        text = response.choices[0].message.content or ""
        return parse_json_reply(text) if output_schema is not None else text


# ═══════════════════════════════════════════════════════════════════════════════
# Anthropic
# ═══════════════════════════════════════════════════════════════════════════════


class AnthropicProvider(BaseLLMProvider):
    def __init__(self, api_key: str, default_model: str = "claude-3-5-sonnet-20241022"):
        from anthropic import AsyncAnthropic

        self.client = AsyncAnthropic(api_key=api_key)
        self.default_model = default_model

    async def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        temperature: float = 0.3,
        model: str | None = None,
        max_tokens: int = 1024,
        output_schema: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any] | str:
        kwargs: Dict[str, Any] = {}
        if system:
            kwargs["system"] = system

        response = await self.client.messages.create(
            model=model or self.default_model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[{"role": "user", "content": prompt + _schema_instruction(output_schema)}],
            **kwargs,
        )
        text = response.content[0].text
        return parse_json_reply(text) if output_schema is not None else text


# ═══════════════════════════════════════════════════════════════════════════════
# Factory
# ═══════════════════════════════════════════════════════════════════════════════

_provider_cache: Dict[str, BaseLLMProvider] = {}


def get_llm_provider(
    provider_name: str,
    *,
    api_key: str | None = None,
    default_model: str | None = None,
) -> BaseLLMProvider:
    """
    Return (and cache) an LLM provider instance.

    Parameters
    ----------
    provider_name : "openai" | "anthropic"
    api_key       : explicit key; if omitted, read from config.
    default_model : override the default model for this provider instance.
    """

    cache_key = f"{provider_name}:{default_model or 'default'}"
    if cache_key in _provider_cache:
        return _provider_cache[cache_key]

    if provider_name == "openai":
        key = api_key or config.openai_api_key
        instance = OpenAIProvider(api_key=key, default_model=default_model or "gpt-4o")
    elif provider_name == "anthropic":
        key = api_key or (config.anthropic_api_key or "")
        instance = AnthropicProvider(
            api_key=key,
            default_model=default_model or "claude-3-5-sonnet-20241022",
        )
    else:
        raise ValueError(f"Unsupported LLM provider: {provider_name}")

    _provider_cache[cache_key] = instance
    return instance


def provider_for(purpose: str) -> tuple[BaseLLMProvider, float]:
    """Provider instance and temperature configured for *purpose*."""
    cfg = config.get_llm_config(purpose)
    return get_llm_provider(cfg["provider"], default_model=cfg["model"]), cfg["temperature"]
