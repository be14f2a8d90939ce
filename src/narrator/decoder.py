"""Incremental decoder for the narrator's structured reply.

The narrator is asked for one JSON object::

    {"thought": "...", "narrative": "...", "mood": "tense",
     "suggestions": ["...", "..."], "metadata": {...},
     "actions": [{"tool": "...", "args": {...}}]}

Chunks arrive split at arbitrary points. ``StreamingDecoder.append`` repairs
the accumulated prefix (closing the open string / arrays / objects) and returns
only the fields that changed since the last patch. ``finalize`` is a pure
function of the whole buffer whenever the document is complete, so any two
splittings of the same document decode identically.

When nothing usable can be decoded, ``plain_text_fallback`` turns free prose
into a narrative plus trailing option lines as suggestions.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

MOODS = ("calm", "tense", "excited", "mysterious", "sad", "joyful")
MIN_SUGGESTIONS = 2
MAX_SUGGESTIONS = 4
# cut-back attempts when a closed prefix still does not parse
MAX_REPAIR_STEPS = 8


class DecodeError(ValueError):
    """The buffer cannot be turned into a structured narrative."""


@dataclass
class StructuredNarrative:
    narrative: str
    thought: Optional[str] = None
    mood: Optional[str] = None
    suggestions: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    actions: List[Dict[str, Any]] = field(default_factory=list)
    fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"narrative": self.narrative}
        if self.thought is not None:
            out["thought"] = self.thought
        if self.mood is not None:
            out["mood"] = self.mood
        if self.suggestions:
            out["suggestions"] = list(self.suggestions)
        if self.metadata:
            out["metadata"] = dict(self.metadata)
        return out


# ---- JSON scanning / repair ----

def _balanced_object(s: str) -> Optional[str]:
    """Return the first balanced {...} block of s (string/escape aware)."""
    i = s.find("{")
    if i == -1:
        return None
    depth = 0
    in_str = False
    esc = False
    for j in range(i, len(s)):
        ch = s[j]
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
        elif ch == '"':
            in_str = True
        elif ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
            if depth == 0:
                return s[i : j + 1]
    return None


def _scan(text: str) -> Tuple[bool, bool, List[str], List[int]]:
    """Walk text and report (in_string, pending_escape, open_stack, cut_points)."""
    stack: List[str] = []
    cuts: List[int] = []
    in_str = False
    esc = False
    for j, ch in enumerate(text):
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch in "{[":
            stack.append(ch)
            cuts.append(j + 1)
        elif ch in "}]":
            if stack:
                stack.pop()
        elif ch == ",":
            cuts.append(j)
    return in_str, esc, stack, cuts


_DANGLING_UNICODE = re.compile(r"(\\+)u[0-9a-fA-F]{0,3}$")
# first half of a surrogate pair whose second half has not arrived yet
_DANGLING_HIGH_SURROGATE = re.compile(r"(\\+)u[dD][89abAB][0-9a-fA-F]{2}$")


def _cut_dangling_escape(out: str) -> str:
    for pattern in (_DANGLING_UNICODE, _DANGLING_HIGH_SURROGATE):
        m = pattern.search(out)
        if m and len(m.group(1)) % 2 == 1:
            out = out[: m.start()] + m.group(1)[:-1]
    return out


def _close(text: str) -> str:
    in_str, esc, stack, _ = _scan(text)
    out = text
    if in_str:
        out = _cut_dangling_escape(out[:-1] if esc else out)
        out += '"'
    out += "".join("}" if c == "{" else "]" for c in reversed(stack))
    return out


def _loads_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        obj = json.loads(text)
    except ValueError:
        return None
    return obj if isinstance(obj, dict) else None


def repair_json(text: str) -> Optional[Dict[str, Any]]:
    """Best-effort parse of a JSON object prefix by syntactic closing only.

    The open string is closed first, then open arrays/objects innermost first.
    A dangling key, colon or literal is cut back to the previous separator.
    """
    start = text.find("{")
    if start == -1:
        return None
    cur = text[start:].rstrip()
    for _ in range(MAX_REPAIR_STEPS + 1):
        obj = _loads_object(_close(cur))
        if obj is not None:
            return obj
        _, _, _, cuts = _scan(cur)
        cuts = [c for c in cuts if c < len(cur)]
        if not cuts:
            return None
        cur = cur[: cuts[-1]].rstrip()
    return None


# ---- validation at the decode boundary ----

def _clean_suggestions(value: Any) -> Optional[List[str]]:
    if not isinstance(value, list):
        return None
    items = [str(x).strip() for x in value if isinstance(x, str) and str(x).strip()]
    return items[:MAX_SUGGESTIONS]


def _clean_actions(value: Any) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    if not isinstance(value, list):
        return out
    for item in value:
        if not isinstance(item, dict):
            continue
        tool = item.get("tool") or item.get("name")
        args = item.get("args", item.get("arguments", {}))
        if not isinstance(tool, str) or not tool.strip():
            continue
        if args is None:
            args = {}
        if not isinstance(args, dict):
            continue
        out.append({"tool": tool.strip(), "args": dict(args)})
    return out


def _partial_fields(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Fields of a (possibly truncated) object that are safe to stream."""
    out: Dict[str, Any] = {}
    if isinstance(obj.get("narrative"), str):
        out["narrative"] = obj["narrative"]
    if isinstance(obj.get("thought"), str):
        out["thought"] = obj["thought"]
    if obj.get("mood") in MOODS:
        out["mood"] = obj["mood"]
    sugg = _clean_suggestions(obj.get("suggestions"))
    if sugg:
        out["suggestions"] = sugg
    if isinstance(obj.get("metadata"), dict):
        out["metadata"] = obj["metadata"]
    return out


def validate_document(obj: Any) -> StructuredNarrative:
    """Turn a parsed JSON value into a StructuredNarrative or raise DecodeError."""
    if not isinstance(obj, dict):
        raise DecodeError("reply is not a JSON object")
    narrative = obj.get("narrative")
    if not isinstance(narrative, str) or not narrative.strip():
        raise DecodeError("missing non-empty narrative")
    sugg = _clean_suggestions(obj.get("suggestions")) or []
    if len(sugg) < MIN_SUGGESTIONS:
        sugg = []
    thought = obj.get("thought")
    mood = obj.get("mood")
    meta = obj.get("metadata")
    return StructuredNarrative(
        narrative=narrative,
        thought=thought if isinstance(thought, str) else None,
        mood=mood if mood in MOODS else None,
        suggestions=sugg,
        metadata=dict(meta) if isinstance(meta, dict) else {},
        actions=_clean_actions(obj.get("actions")),
    )


class StreamingDecoder:
    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self._buf = ""
        self._state: Dict[str, Any] = {}
        self._last_obj: Optional[Dict[str, Any]] = None
        self._narrative_len = 0

    @property
    def buffer(self) -> str:
        return self._buf

    @property
    def state(self) -> Dict[str, Any]:
        return dict(self._state)

    @property
    def narrative(self) -> str:
        return str(self._state.get("narrative", ""))

    def append(self, chunk: str) -> Optional[Dict[str, Any]]:
        """Add a chunk; return the changed fields, or None when nothing changed."""
        if not chunk:
            return None
        self._buf += chunk
        if "{" not in self._buf:
            return None
        whole = _balanced_object(self._buf)
        obj = _loads_object(whole) if whole else None
        if obj is None:
            obj = repair_json(self._buf)
        if obj is None:
            return None
        self._last_obj = obj
        patch: Dict[str, Any] = {}
        for key, value in _partial_fields(obj).items():
            if key == "narrative":
                # never shorter; a same-length change corrects an earlier repair
                if len(value) >= self._narrative_len and value != self._state.get("narrative"):
                    patch[key] = value
                    self._narrative_len = len(value)
            elif self._state.get(key) != value:
                patch[key] = value
        if not patch:
            return None
        self._state.update(patch)
        return patch

    def finalize(self) -> Optional[StructuredNarrative]:
        """Decode the whole buffer; None when no narrative can be recovered."""
        whole = _balanced_object(self._buf)
        if whole is not None:
            try:
                return validate_document(json.loads(whole))
            except (ValueError, DecodeError):
                pass
        for candidate in (repair_json(self._buf), self._last_obj):
            if candidate is None:
                continue
            try:
                return validate_document(candidate)
            except DecodeError:
                continue
        return None


# ---- plain-text fallback ----

_BULLET_OPTION = re.compile(r"^[-*•]\s+(?:\*\*)?[【\[]?(?P<text>[^\]】*\n]{1,50}?)[】\]]?(?:\*\*)?\s*$")
_BRACKET_TOKEN = re.compile(r"(?:\*\*)?[【\[](?P<text>[^\]】\n]{1,50})[】\]](?:\*\*)?")
_HEADER_LINE = re.compile(r"^(?:\*\*)?(?:建议|选项|可选行动|Actions|Suggestions)(?:\*\*)?[:：]\s*(?:\*\*)?$", re.IGNORECASE)
_PROMPT_LINE = re.compile(r"^\*\*.*[？?：:]\s*\*\*$|^.*[？?：:]$")
_TOKEN_SEPARATORS = " \t,，、/|·;；"


def _option_tokens(line: str) -> List[str]:
    m = _BULLET_OPTION.match(line)
    if m:
        text = m.group("text").strip()
        return [text] if text else []
    tokens = [t.group("text").strip() for t in _BRACKET_TOKEN.finditer(line)]
    tokens = [t for t in tokens if t]
    if not tokens:
        return []
    leftover = _BRACKET_TOKEN.sub("", line).strip(_TOKEN_SEPARATORS)
    if len(leftover) > sum(len(t) for t in tokens):
        return []
    return tokens


def plain_text_fallback(text: str) -> StructuredNarrative:
    """Peel trailing option lines (and the prompt line above them) into suggestions."""
    raw = str(text or "").strip()
    if not raw:
        return StructuredNarrative(narrative="...", fallback=True)
    lines = raw.splitlines()
    options: List[str] = []
    cut = len(lines)
    i = len(lines) - 1
    while i >= 0:
        line = lines[i].strip()
        if not line:
            i -= 1
            continue
        found = _option_tokens(line)
        if not found:
            break
        options = found + options
        cut = i
        i -= 1
    if options:
        # at most one header and one prompt line directly above the options
        peeled = 0
        while i >= 0 and peeled < 2:
            line = lines[i].strip()
            if not line:
                i -= 1
                continue
            if _HEADER_LINE.match(line) or _PROMPT_LINE.match(line):
                cut = i
                i -= 1
                peeled += 1
                continue
            break
    if len(options) < MIN_SUGGESTIONS:
        return StructuredNarrative(narrative=raw, fallback=True)
    seen: List[str] = []
    for opt in options:
        if opt not in seen:
            seen.append(opt)
    narrative = "\n".join(lines[:cut]).strip() or raw
    return StructuredNarrative(narrative=narrative, suggestions=seen[:MAX_SUGGESTIONS], fallback=True)


def decode_reply(text: str) -> StructuredNarrative:
    """Decode a complete reply in one go; never fails for non-empty text."""
    dec = StreamingDecoder()
    dec.append(str(text or ""))
    result = dec.finalize()
    return result if result is not None else plain_text_fallback(text)
