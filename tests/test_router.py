import pytest

from nim_proxy import router
from nim_proxy.router import (
    build_upstream_payload,
    public_model_ids,
    resolve_model,
    strip_thinking_suffix,
    thinking_requested,
)


@pytest.fixture
def no_global_thinking(monkeypatch):
    monkeypatch.setattr(router.settings, "enable_thinking_mode", False)


def test_known_public_model_is_mapped():
    assert resolve_model("kimi-k2") == "moonshotai/kimi-k2-instruct"
    assert resolve_model("gpt-4o") == "deepseek-ai/deepseek-v3.1"


def test_unknown_model_passes_through():
    assert resolve_model("meta/llama-3.3-70b-instruct") == "meta/llama-3.3-70b-instruct"


def test_missing_model_uses_default(monkeypatch):
    monkeypatch.setattr(router.settings, "default_model", "some/default")
    assert resolve_model(None) == "some/default"
    assert resolve_model("") == "some/default"


def test_model_map_overrides_builtin_table(monkeypatch):
    monkeypatch.setattr(router.settings, "model_map", {"gpt-4": "qwen/qwen3-coder", "mine": "vendor/mine"})
    assert resolve_model("gpt-4") == "qwen/qwen3-coder"
    assert resolve_model("mine") == "vendor/mine"
    assert "mine" in public_model_ids()


def test_strip_thinking_suffix():
    assert strip_thinking_suffix("deepseek-v3.2:THINKING") == ("deepseek-v3.2", True)
    assert strip_thinking_suffix("kimi-k2:reason ") == ("kimi-k2", True)
    assert strip_thinking_suffix("kimi-k2") == ("kimi-k2", False)
    assert strip_thinking_suffix(None) == (None, False)


def test_thinking_hints(no_global_thinking):
    assert thinking_requested("deepseek-r1") is True
    assert thinking_requested("kimi-thinking") is True
    assert thinking_requested("kimi-k2:think") is True
    assert thinking_requested("gpt-4", header_value="yes") is True
    assert thinking_requested("gpt-4") is False
    assert thinking_requested(None) is False


def test_global_thinking_mode_applies_to_every_model(monkeypatch):
    monkeypatch.setattr(router.settings, "enable_thinking_mode", True)
    assert thinking_requested("gpt-4") is True


def test_payload_defaults_and_rewrite(no_global_thinking):
    messages = [{"role": "user", "content": "hi"}]
    out = build_upstream_payload({"model": "claude-3-opus", "messages": messages})
    assert out == {
        "model": "deepseek-ai/deepseek-r1",
        "messages": messages,
        "temperature": 0.6,
        "max_tokens": 4096,
        "stream": False,
        "chat_template_kwargs": {"thinking": True},
    }
    assert out["messages"] is messages


def test_payload_keeps_explicit_values(no_global_thinking):
    out = build_upstream_payload(
        {"model": "gpt-4", "messages": [], "temperature": 0.2, "max_tokens": 100, "stream": True}
    )
    assert out["temperature"] == 0.2
    assert out["max_tokens"] == 100
    assert out["stream"] is True
    assert "chat_template_kwargs" not in out


def test_payload_falsy_values_take_defaults(no_global_thinking):
    out = build_upstream_payload({"model": "gpt-4", "messages": [], "temperature": 0, "max_tokens": 0, "stream": None})
    assert out["temperature"] == 0.6
    assert out["max_tokens"] == 4096
    assert out["stream"] is False


def test_payload_strips_suffix_before_routing(no_global_thinking):
    out = build_upstream_payload({"model": "kimi-k2:thinking", "messages": []})
    assert out["model"] == "moonshotai/kimi-k2-instruct"
    assert out["chat_template_kwargs"] == {"thinking": True}


def test_resolved_reasoning_model_enables_thinking(no_global_thinking):
    assert thinking_requested("claude-3-opus", resolved_model="deepseek-ai/deepseek-r1") is True
    assert thinking_requested("gemini-pro", resolved_model="qwen/qwen3-next-80b-a3b-thinking") is True
    assert thinking_requested("gpt-4", resolved_model="deepseek-ai/deepseek-v3.1") is False
    out = build_upstream_payload({"model": "gemini-pro", "messages": []})
    assert out["chat_template_kwargs"] == {"thinking": True}


def test_fractional_max_tokens_is_truncated(no_global_thinking):
    out = build_upstream_payload({"model": "gpt-4", "messages": [], "max_tokens": 1000.5})
    assert out["max_tokens"] == 1000
    assert isinstance(out["max_tokens"], int)
