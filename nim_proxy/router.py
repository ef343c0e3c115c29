from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Tuple

from .config import settings


# Public model name → NIM model id
MODEL_MAPPING: Dict[str, str] = {
    "deepseek-v3.2": "deepseek-ai/deepseek-v3.2",
    "deepseek-r1": "deepseek-ai/deepseek-r1",
    "deepseek-r1-0528": "deepseek-ai/deepseek-r1-0528",
    "kimi-thinking": "moonshotai/kimi-k2-thinking",
    "kimi-k2": "moonshotai/kimi-k2-instruct",
    "gpt-3.5-turbo": "nvidia/llama-3.1-nemotron-ultra-253b-v1",
    "gpt-4": "deepseek-ai/deepseek-v3.1",
    "gpt-4-turbo": "moonshotai/kimi-k2-instruct-0905",
    "gpt-4o": "deepseek-ai/deepseek-v3.1",
    "claude-3-opus": "deepseek-ai/deepseek-r1",
    "claude-3-sonnet": "deepseek-ai/deepseek-v3.2",
    "gemini-pro": "qwen/qwen3-next-80b-a3b-thinking",
}

_THINKING_SUFFIX_RE = re.compile(r":(thinking|think|reason|reasoning)\s*$", flags=re.IGNORECASE)
_TRUTHY_HEADER = ("1", "true", "yes", "on", "enable", "enabled")


def model_table() -> Dict[str, str]:
    """Built-in mapping with MODEL_MAP overrides applied."""
    table = dict(MODEL_MAPPING)
    table.update({str(k): str(v) for k, v in settings.model_map.items()})
    return table


def public_model_ids() -> List[str]:
    return list(model_table().keys())


def strip_thinking_suffix(model: Optional[str]) -> Tuple[Optional[str], bool]:
    """Strip a trailing ":thinking" style suffix (case-insensitive) from a model id.

    Returns (new_model, enabled) where enabled indicates the suffix was present.
    """
    if not model:
        return model, False
    s = str(model).strip()
    if _THINKING_SUFFIX_RE.search(s):
        return _THINKING_SUFFIX_RE.sub("", s), True
    return model, False


def resolve_model(public_model: Optional[str]) -> str:
    """Map a public id to the NIM id; unknown ids pass through, missing ids use the default."""
    if public_model:
        return model_table().get(public_model, public_model)
    return settings.default_model


def thinking_requested(
    public_model: Optional[str],
    header_value: Optional[str] = None,
    resolved_model: Optional[str] = None,
) -> bool:
    """True when the global switch, the inbound header, or either model id asks for reasoning."""
    if settings.enable_thinking_mode:
        return True
    if (header_value or "").strip().lower() in _TRUTHY_HEADER:
        return True
    for name in (public_model, resolved_model):
        lowered = (name or "").lower()
        if "thinking" in lowered or "r1" in lowered:
            return True
    _, suffixed = strip_thinking_suffix(public_model)
    return suffixed


def _token_limit(value: Any) -> int:
    if not value:
        return settings.default_max_tokens
    # upstream expects an integer count
    return int(value)


def build_upstream_payload(body: Dict[str, Any], thinking_header: Optional[str] = None) -> Dict[str, Any]:
    """Build the NIM chat-completions body from an inbound OpenAI-style body."""
    requested = body.get("model")
    base_model, _ = strip_thinking_suffix(requested)
    resolved = resolve_model(base_model)
    payload: Dict[str, Any] = {
        "model": resolved,
        "messages": body.get("messages"),
        # falsy values (0, None) take the configured defaults as well
        "temperature": body.get("temperature") or settings.default_temperature,
        "max_tokens": _token_limit(body.get("max_tokens")),
        "stream": bool(body.get("stream")),
    }
    if thinking_requested(requested, thinking_header, resolved_model=resolved):
        payload["chat_template_kwargs"] = {"thinking": True}
    return payload
