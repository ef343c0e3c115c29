from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple


OPEN_DELIMITER = "<think>\n"
CLOSE_DELIMITER = "\n</think>\n\n"

# Providers disagree on the name of the hidden field; the first one found wins.
REASONING_KEYS = ("reasoning_content", "reasoning")


@dataclass
class Delta:
    reasoning: Optional[str] = None
    content: Optional[str] = None


@dataclass
class SpliceState:
    reasoning_open: bool = False


def _fragment(value: Any) -> Optional[str]:
    """Normalize a delta field; only None is absent, "" is a present empty fragment."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        value = "".join(str(part) for part in value if part is not None)
    return value if isinstance(value, str) else str(value)


def _pop_reasoning(obj: Dict[str, Any]) -> Any:
    found = None
    for key in REASONING_KEYS:
        if key in obj:
            value = obj.pop(key)
            if found is None:
                found = value
    return found


def _first_choice(record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    choices = record.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return None


def extract_delta(record: Dict[str, Any]) -> Tuple[Optional[Dict[str, Any]], Delta]:
    """Return the first choice's delta object and the fragments read from it."""
    choice = _first_choice(record)
    delta = choice.get("delta") if choice else None
    if not isinstance(delta, dict):
        return None, Delta()
    reasoning = None
    for key in REASONING_KEYS:
        reasoning = _fragment(delta.get(key))
        if reasoning is not None:
            break
    return delta, Delta(reasoning=reasoning, content=_fragment(delta.get("content")))


class ReasoningSplicer:
    """Per-stream state machine bracketing reasoning runs with think delimiters.

    One instance per streaming response. A stream that ends while a run is
    open leaves the opening delimiter unmatched.
    """

    def __init__(self) -> None:
        self.state = SpliceState()

    @property
    def reasoning_open(self) -> bool:
        return self.state.reasoning_open

    def splice_text(self, delta: Delta) -> Optional[str]:
        """Visible text for one delta, or None when the delta carries neither fragment."""
        if delta.reasoning is None and delta.content is None:
            return None
        out = ""
        if delta.reasoning is not None:
            if self.state.reasoning_open:
                out = delta.reasoning
            else:
                out = OPEN_DELIMITER + delta.reasoning
                self.state.reasoning_open = True
        if delta.content is not None:
            if self.state.reasoning_open:
                out += CLOSE_DELIMITER + delta.content
                self.state.reasoning_open = False
            else:
                out += delta.content
        return out

    def rewrite(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Rewrite a decoded chunk in place and return it."""
        delta_obj, delta = extract_delta(record)
        if delta_obj is None:
            return record
        text = self.splice_text(delta)
        if text is None:
            return record
        _pop_reasoning(delta_obj)
        delta_obj["content"] = text
        return record


def splice_message(message: Dict[str, Any]) -> str:
    """Visible content for one complete message with its reasoning folded in."""
    content = message.get("content") or ""
    if not isinstance(content, str):
        content = _fragment(content) or ""
    reasoning = None
    for key in REASONING_KEYS:
        reasoning = _fragment(message.get(key))
        if reasoning is not None:
            break
    if reasoning is None:
        return content
    return f"{OPEN_DELIMITER}{reasoning}{CLOSE_DELIMITER}{content}"


def aggregate(record: Dict[str, Any], show_reasoning: bool = True) -> Dict[str, Any]:
    """Rewrite every choice of a complete chat completion; the input is not mutated."""
    choices: List[Dict[str, Any]] = []
    for choice in record.get("choices") or []:
        if not isinstance(choice, dict):
            continue
        message = choice.get("message") or {}
        if show_reasoning:
            content = splice_message(message)
        else:
            content = message.get("content") or ""
        choices.append({
            **choice,
            "message": {"role": message.get("role") or "assistant", "content": content},
        })
    return {**record, "choices": choices}


def openai_completion_response(
    data: Dict[str, Any],
    requested_model: Optional[str],
    show_reasoning: bool = True,
) -> Dict[str, Any]:
    """Build the outward chat.completion body, echoing the public model name."""
    rewritten = aggregate(data, show_reasoning=show_reasoning)
    return {
        "id": f"chatcmpl-{int(time.time() * 1000)}",
        "object": "chat.completion",
        "created": now_unix(),
        "model": requested_model,
        "choices": rewritten["choices"],
        "usage": data.get("usage") or {},
    }


def encode_event(record: Dict[str, Any]) -> bytes:
    return f"data: {json_dumps_safe(record)}\n\n".encode("utf-8")


def now_unix() -> int:
    return int(time.time())


def json_dumps_safe(obj: Any) -> str:
    try:
        return json.dumps(obj, ensure_ascii=False)
    except Exception:
        return "{}"
