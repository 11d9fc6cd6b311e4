"""
Unit tests -- LLM client: mock mode, dispatch and the query tool declaration.
"""
import pytest

from erp_copilot.copilot.llm_client import Draft, draft, query_tool_spec
from erp_copilot.core.config import get_settings


def test_mock_returns_draft():
    result = draft("Hello world", provider="mock")
    assert isinstance(result, Draft)
    assert result.tool_call is None


def test_mock_prefix():
    assert draft("Hello world", provider="mock").text.startswith("[MOCK]")


def test_mock_echoes_prompt():
    prompt = "What were confirmed sales this month?"
    assert prompt[:20] in draft(prompt, provider="mock").text


def test_mock_never_calls_tool():
    assert draft("sales by customer", tool=query_tool_spec(), provider="mock").tool_call is None


def test_unknown_provider_raises():
    with pytest.raises(NotImplementedError, match="not supported"):
        draft("hi", provider="banana")


def test_openai_missing_key_raises(monkeypatch):
    monkeypatch.setattr(get_settings(), "openai_api_key", "")
    with pytest.raises(RuntimeError, match="openai_api_key"):
        draft("hi", provider="openai")


def test_anthropic_missing_key_raises(monkeypatch):
    monkeypatch.setattr(get_settings(), "anthropic_api_key", "")
    with pytest.raises(RuntimeError, match="anthropic_api_key"):
        draft("hi", provider="anthropic")


def test_tool_spec_uses_camel_case_schema():
    tool = query_tool_spec()
    assert tool.name == "run_intelligent_query"
    assert "queries" in tool.parameters["properties"]
    assert "includeComparison" in tool.parameters["properties"]
    sub = tool.parameters["$defs"]["SubQuerySpec"]["properties"]
    assert {"filterText", "groupBy", "explicitDateRange", "compareMode"} <= set(sub)
