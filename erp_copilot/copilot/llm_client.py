"""
LLM client abstraction -- provider-agnostic ``draft`` capability.

``draft(prompt, tool)`` returns a ``Draft`` holding the model's text and,
when the model chose to call the declared tool, the call's arguments.
Everything returned here is untrusted: tool arguments go through batch
validation and answer text goes through the grounding validator.

Supported providers:
  mock      -- no network; echoes the prompt, never calls the tool
  openai    -- OpenAI Chat Completions with function tools
  anthropic -- Anthropic Messages with tool use

Configuration is read from Settings (env / .env).
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from erp_copilot.core.config import get_settings
from erp_copilot.core.logging import get_logger

logger = get_logger(__name__)


_OPENAI_DEFAULT_MODEL = "gpt-4o-mini"
_ANTHROPIC_DEFAULT_MODEL = "claude-3-haiku-20240307"
_SYSTEM_PROMPT = (
    "You are an ERP analytics assistant. Answer only from tool results. "
    "Never invent customer names, amounts or periods."
)


@dataclass(frozen=True)
class ToolSpec:
    """A function the model may ask to invoke."""
    name: str
    description: str
    parameters: dict[str, Any]


@dataclass(frozen=True)
class ToolCall:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Draft:
    text: str = ""
    tool_call: ToolCall | None = None


def query_tool_spec() -> ToolSpec:
    """Declaration of the query tool, with the request schema in camelCase."""
    from erp_copilot.copilot.spec import ToolRequest

    return ToolSpec(
        name="run_intelligent_query",
        description=(
            "Run up to 5 read-only ERP sub-queries (search, count, aggregate, distinct, "
            "discover, inspect) with optional period comparison and insights."
        ),
        parameters=ToolRequest.model_json_schema(by_alias=True),
    )


# ── Providers ───────────────────────────────────────────


def _call_mock(prompt: str, tool: ToolSpec | None) -> Draft:
    logger.info("LLM mock mode -- returning echo")
    return Draft(text=f"[MOCK] {prompt[:200]}")


def _call_openai(prompt: str, tool: ToolSpec | None) -> Draft:
    """Call OpenAI Chat Completions, declaring *tool* as a function."""
    settings = get_settings()
    api_key = settings.openai_api_key
    if not api_key:
        raise RuntimeError(
            "openai_api_key is not set.  "
            "Set OPENAI_API_KEY in your .env file or environment."
        )

    try:
        import openai  # type: ignore[import-untyped]
    except ImportError as exc:
        raise RuntimeError(
            "The 'openai' package is not installed.  "
            "Run: pip install openai"
        ) from exc

    kwargs: dict[str, Any] = {}
    if tool is not None:
        kwargs["tools"] = [{
            "type": "function",
            "function": {"name": tool.name, "description": tool.description, "parameters": tool.parameters},
        }]

    client = openai.OpenAI(api_key=api_key)
    response = client.chat.completions.create(
        model=_OPENAI_DEFAULT_MODEL,
        messages=[
            {"role": "system", "content": _SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        temperature=0.0,
        max_tokens=1024,
        **kwargs,
    )
    message = response.choices[0].message
    call = None
    if message.tool_calls:
        fn = message.tool_calls[0].function
        call = ToolCall(name=fn.name, arguments=json.loads(fn.arguments or "{}"))
    text = message.content or ""
    logger.info("OpenAI response (%d chars, tool_call=%s)", len(text), call is not None)
    return Draft(text=text, tool_call=call)


def _call_anthropic(prompt: str, tool: ToolSpec | None) -> Draft:
    """Call Anthropic Messages, declaring *tool* for tool use."""
    settings = get_settings()
    api_key = settings.anthropic_api_key
    if not api_key:
        raise RuntimeError(
            "anthropic_api_key is not set.  "
            "Set ANTHROPIC_API_KEY in your .env file or environment."
        )

    try:
        import anthropic  # type: ignore[import-untyped]
    except ImportError as exc:
        raise RuntimeError(
            "The 'anthropic' package is not installed.  "
            "Run: pip install anthropic"
        ) from exc

    kwargs: dict[str, Any] = {}
    if tool is not None:
        kwargs["tools"] = [{"name": tool.name, "description": tool.description, "input_schema": tool.parameters}]

    client = anthropic.Anthropic(api_key=api_key)
    response = client.messages.create(
        model=_ANTHROPIC_DEFAULT_MODEL,
        max_tokens=1024,
        system=_SYSTEM_PROMPT,
        messages=[{"role": "user", "content": prompt}],
        **kwargs,
    )
    texts: list[str] = []
    call = None
    for block in response.content:
        if block.type == "text":
            texts.append(block.text)
        elif block.type == "tool_use" and call is None:
            call = ToolCall(name=block.name, arguments=dict(block.input or {}))
    text = "".join(texts)
    logger.info("Anthropic response (%d chars, tool_call=%s)", len(text), call is not None)
    return Draft(text=text, tool_call=call)


_PROVIDERS: dict[str, Any] = {
    "mock": _call_mock,
    "openai": _call_openai,
    "anthropic": _call_anthropic,
}


def draft(prompt: str, tool: ToolSpec | None = None, provider: str | None = None) -> Draft:
    """Send *prompt* to the configured (or overridden) LLM provider.

    Parameters
    ----------
    prompt : str
        The full prompt text.
    tool : ToolSpec, optional
        A tool the model may ask to invoke instead of (or besides) answering.
    provider : str, optional
        Override the provider from settings.  One of: mock, openai, anthropic.
    """
    if provider is None:
        provider = get_settings().llm_provider.lower()

    fn = _PROVIDERS.get(provider)
    if fn is None:
        raise NotImplementedError(
            f"LLM provider '{provider}' is not supported.  "
            f"Choose from: {', '.join(_PROVIDERS)}"
        )

    logger.info("Calling LLM provider=%s  prompt_len=%d  tool=%s", provider, len(prompt), tool.name if tool else None)
    return fn(prompt, tool)
