"""Decoder for the control markers agents embed in their answers.

Two request forms are recognised::

    DELEGATE(<agent name>, "<task as a JSON string literal>")
    TOOL(<tool id>, <JSON value>)

The agent name may be bare (anything up to the comma, without quotes,
parentheses or newlines) or a JSON string. The task of a delegation and
the arguments of a tool call are read with a JSON decoder, so escaped
quotes, commas and nested objects are handled. Anything that starts like a
request but does not match the grammar decodes to
:class:`MalformedRequest` and is never acted upon.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, List, Tuple, Union

DELEGATE_KEYWORD = "DELEGATE("
TOOL_KEYWORD = "TOOL("

_KEYWORDS = re.compile(r"\b(DELEGATE|TOOL)\(")
_BARE_NAME = re.compile(r"[^,()\"\n]+")
_TOOL_ID = re.compile(r"[A-Za-z_][\w.\-:]*")
_DECODER = json.JSONDecoder(strict=False)


@dataclass(frozen=True)
class NoAction:
    """The text carries no control marker."""


@dataclass(frozen=True)
class DelegateRequest:
    agent: str
    task: str
    start: int = 0
    end: int = 0


@dataclass(frozen=True)
class ToolRequest:
    tool: str
    args: Any
    start: int = 0
    end: int = 0


@dataclass(frozen=True)
class MalformedRequest:
    kind: str
    target: str
    fragment: str
    reason: str


Request = Union[DelegateRequest, ToolRequest, MalformedRequest]
Decoded = Union[NoAction, Request]


class _GrammarError(ValueError):
    def __init__(self, reason: str, target: str = "") -> None:
        super().__init__(reason)
        self.reason = reason
        self.target = target


def _skip_ws(text: str, pos: int) -> int:
    while pos < len(text) and text[pos] in " \t\r\n":
        pos += 1
    return pos


def _read_json(text: str, pos: int, what: str, target: str) -> Tuple[Any, int]:
    try:
        return _DECODER.raw_decode(text, pos)
    except json.JSONDecodeError as exc:
        raise _GrammarError(f"invalid {what}: {exc.msg}", target) from exc


def _expect(text: str, pos: int, char: str, target: str) -> int:
    pos = _skip_ws(text, pos)
    if pos >= len(text) or text[pos] != char:
        raise _GrammarError(f"expected '{char}'", target)
    return pos + 1


def _parse_delegate(text: str, start: int) -> DelegateRequest:
    pos = _skip_ws(text, start + len(DELEGATE_KEYWORD))
    if pos < len(text) and text[pos] == '"':
        agent, pos = _read_json(text, pos, "agent name", "")
        if not isinstance(agent, str):
            raise _GrammarError("agent name must be a string")
    else:
        match = _BARE_NAME.match(text, pos)
        if not match:
            raise _GrammarError("missing agent name")
        agent, pos = match.group(0), match.end()
    agent = agent.strip()
    if not agent:
        raise _GrammarError("missing agent name")

    pos = _expect(text, pos, ",", agent)
    pos = _skip_ws(text, pos)
    if pos >= len(text) or text[pos] != '"':
        raise _GrammarError("task must be a quoted string", agent)
    task, pos = _read_json(text, pos, "task string", agent)
    pos = _expect(text, pos, ")", agent)
    return DelegateRequest(agent=agent, task=task, start=start, end=pos)


def _parse_tool(text: str, start: int) -> ToolRequest:
    pos = _skip_ws(text, start + len(TOOL_KEYWORD))
    match = _TOOL_ID.match(text, pos)
    if not match:
        raise _GrammarError("missing tool id")
    tool, pos = match.group(0), match.end()
    pos = _skip_ws(text, pos)
    if pos < len(text) and text[pos] == ")":
        return ToolRequest(tool=tool, args={}, start=start, end=pos + 1)
    pos = _expect(text, pos, ",", tool)
    pos = _skip_ws(text, pos)
    args, pos = _read_json(text, pos, "tool arguments", tool)
    pos = _expect(text, pos, ")", tool)
    return ToolRequest(tool=tool, args=args, start=start, end=pos)


def _parse_at(text: str, start: int, kind: str) -> Request:
    parser = _parse_delegate if kind == "DELEGATE" else _parse_tool
    try:
        return parser(text, start)
    except _GrammarError as exc:
        fragment = text[start : start + 120]
        return MalformedRequest(kind=kind.lower(), target=exc.target, fragment=fragment, reason=exc.reason)


def scan(text: str) -> List[Request]:
    """Every request in ``text``, in order of appearance."""
    found: List[Request] = []
    if not text:
        return found
    pos = 0
    while True:
        match = _KEYWORDS.search(text, pos)
        if not match:
            return found
        request = _parse_at(text, match.start(), match.group(1))
        found.append(request)
        pos = request.end if not isinstance(request, MalformedRequest) else match.end()


def decode(text: str) -> Decoded:
    """First well formed request in ``text``.

    Falls back to the first malformed one, then to :class:`NoAction`.
    """
    requests = scan(text)
    for request in requests:
        if not isinstance(request, MalformedRequest):
            return request
    return requests[0] if requests else NoAction()


def decode_exact(text: str) -> Decoded:
    """Decode ``text`` only if it consists of a single request and nothing else."""
    stripped = (text or "").strip()
    offset = len(text or "") - len((text or "").lstrip())
    match = _KEYWORDS.match(stripped)
    if not match:
        return NoAction()
    request = _parse_at(stripped, 0, match.group(1))
    if isinstance(request, MalformedRequest):
        return request
    if request.end != len(stripped):
        return NoAction()
    if isinstance(request, DelegateRequest):
        return DelegateRequest(request.agent, request.task, offset, offset + request.end)
    return ToolRequest(request.tool, request.args, offset, offset + request.end)


def delegations(text: str) -> List[DelegateRequest]:
    return [request for request in scan(text) if isinstance(request, DelegateRequest)]


def tool_requests(text: str) -> List[ToolRequest]:
    return [request for request in scan(text) if isinstance(request, ToolRequest)]


def is_delegation_request(text: str) -> bool:
    return bool(delegations(text))


def has_tool_request(text: str) -> bool:
    return bool(tool_requests(text))


def has_delegation_marker(text: str) -> bool:
    """Loose check used for replan detection: any ``DELEGATE(`` at all."""
    return DELEGATE_KEYWORD in (text or "")


def encode_delegate(agent: str, task: str) -> str:
    return f"DELEGATE({agent}, {json.dumps(task, ensure_ascii=False)})"


def replace_requests(text: str, requests: List[Request], replacement: str) -> str:
    """Replace the spans of well formed ``requests`` with ``replacement``."""
    spans = sorted(
        ((request.start, request.end) for request in requests if not isinstance(request, MalformedRequest)),
        reverse=True,
    )
    for start, end in spans:
        text = text[:start] + replacement + text[end:]
    return text


def replace_delegations(text: str, replacement: str) -> str:
    return replace_requests(text, list(delegations(text)), replacement)
