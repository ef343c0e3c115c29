from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


LINE_TERMINATOR = b"\n"
DATA_PREFIX = b"data: "
TERMINAL_SENTINEL = b"[DONE]"


def feed(pending: bytes, chunk: bytes) -> Tuple[List[bytes], bytes]:
    """Split pending + chunk into complete lines and the new unterminated tail.

    Only the single byte 0x0A terminates a line. The last split element is
    always the new tail, so input ending on a terminator yields an empty tail.
    """
    parts = (pending + chunk).split(LINE_TERMINATOR)
    return parts[:-1], parts[-1]


class LineReassembler:
    """Holds the pending tail of one stream between chunks."""

    def __init__(self) -> None:
        self.pending: bytes = b""

    def push(self, chunk: bytes) -> List[bytes]:
        lines, self.pending = feed(self.pending, chunk)
        return lines

    def discard(self) -> None:
        self.pending = b""


class FrameKind(str, Enum):
    DATA = "data"
    TERMINAL = "terminal"
    IGNORABLE = "ignorable"


@dataclass
class Frame:
    kind: FrameKind
    raw: bytes
    record: Optional[Dict[str, Any]] = None


def classify(line: bytes) -> Frame:
    if not line.startswith(DATA_PREFIX):
        return Frame(FrameKind.IGNORABLE, line)
    remainder = line[len(DATA_PREFIX):]
    if TERMINAL_SENTINEL in remainder:
        return Frame(FrameKind.TERMINAL, line)
    try:
        record = json.loads(remainder)
    except ValueError:
        return Frame(FrameKind.IGNORABLE, line)
    if not isinstance(record, dict):
        return Frame(FrameKind.IGNORABLE, line)
    return Frame(FrameKind.DATA, line, record)
