"""
Thin adapter over the generative text backend.

Scope (minimal on purpose):
- AgentScopeNarrator: builds an agentscope OpenAIChatModel from NarratorConfig
  and streams one narrator step as NarratorChunk objects (text deltas, then the
  native tool calls of that step on the last chunk).
- to_msgs: turns the orchestrator's plain-dict history into agentscope Msg
  objects so the OpenAI formatter can render tool calls and tool results.

Prompt assembly, decoding, tool execution and the guard stay in the
orchestrator.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from agentscope.formatter import OpenAIChatFormatter
from agentscope.message import Msg, TextBlock, ToolResultBlock, ToolUseBlock
from agentscope.model import OpenAIChatModel

LOGGER = logging.getLogger("chaos_saga.narrator")


class NarratorError(RuntimeError):
    """The backend failed to produce a reply."""


class UpstreamTimeout(NarratorError):
    """The backend did not answer within the turn deadline."""


@dataclass
class NarratorChunk:
    text: str = ""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)


class Narrator(ABC):
    """Interface: one call streams one narrator step."""

    @abstractmethod
    def stream(
        self,
        system_prompt: str,
        messages: Sequence[Dict[str, Any]],
        tools: Sequence[Dict[str, Any]],
    ) -> AsyncIterator[NarratorChunk]:
        raise NotImplementedError


def to_msgs(system_prompt: str, history: Sequence[Dict[str, Any]]) -> List[Msg]:
    """History entries: {role, content} | {role: assistant, tool_calls} | {role: tool, id, name, output}."""
    out: List[Msg] = [Msg("system", system_prompt, "system")]
    for m in history:
        role = str(m.get("role") or "user")
        if role == "tool":
            out.append(Msg(
                "system",
                [ToolResultBlock(type="tool_result", id=str(m.get("id")), name=str(m.get("name")), output=str(m.get("output", "")))],
                "system",
            ))
        elif m.get("tool_calls"):
            blocks: List[Any] = []
            if m.get("content"):
                blocks.append(TextBlock(type="text", text=str(m["content"])))
            for call in m["tool_calls"]:
                blocks.append(ToolUseBlock(type="tool_use", id=str(call["id"]), name=str(call["name"]), input=dict(call.get("input") or {})))
            out.append(Msg("narrator", blocks, "assistant"))
        else:
            name = "narrator" if role == "assistant" else role
            out.append(Msg(name, str(m.get("content", "")), role if role in ("user", "assistant", "system") else "user"))
    return out


def _block_get(blk: Any, key: str, default: Any = None) -> Any:
    if isinstance(blk, dict):
        return blk.get(key, default)
    return getattr(blk, key, default)


def _text_of(content: Sequence[Any]) -> str:
    return "".join(str(_block_get(b, "text", "")) for b in content or [] if _block_get(b, "type") == "text")


def _text_delta(emitted: str, text: str) -> str:
    """The part of the accumulated text not yet sent; empty when it was rewritten."""
    if not text.startswith(emitted):
        LOGGER.warning("backend rewrote streamed text (%d chars sent, now %d); skipping", len(emitted), len(text))
        return ""
    return text[len(emitted):]


def _tool_calls_of(content: Sequence[Any]) -> List[Dict[str, Any]]:
    calls: List[Dict[str, Any]] = []
    for b in content or []:
        if _block_get(b, "type") != "tool_use":
            continue
        raw = _block_get(b, "input", {})
        if isinstance(raw, str):
            try:
                raw = json.loads(raw) if raw.strip() else {}
            except ValueError:
                LOGGER.warning("unparseable tool arguments for %s: %r", _block_get(b, "name"), raw[:200])
                raw = {}
        calls.append({
            "id": str(_block_get(b, "id", "")),
            "name": str(_block_get(b, "name", "")),
            "input": dict(raw) if isinstance(raw, dict) else {},
        })
    return calls


def _backend_error(exc: Exception) -> NarratorError:
    # openai's APITimeoutError is not a TimeoutError subclass
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)) or "timeout" in type(exc).__name__.lower():
        return UpstreamTimeout(str(exc) or type(exc).__name__)
    return NarratorError(str(exc))


class AgentScopeNarrator(Narrator):
    """OpenAI-compatible backend through agentscope's model and formatter."""

    def __init__(self, config: Any, *, debug_dump_prompts: bool = False, dump_dir: Optional[Path] = None) -> None:
        api_key = os.getenv(config.api_key_env, "").strip()
        if not api_key:
            raise NarratorError(f"{config.api_key_env} is not set. Please export it to use the narrator backend.")
        self.config = config
        self.model = OpenAIChatModel(
            model_name=config.model,
            api_key=api_key,
            stream=bool(config.stream),
            client_args={"base_url": config.base_url},
            generate_kwargs={"temperature": float(config.temperature), "max_tokens": int(config.max_tokens)},
        )
        self.formatter = OpenAIChatFormatter()
        self._debug = bool(debug_dump_prompts)
        self._dump_dir = dump_dir or Path("logs") / "prompts"
        self.dump_tag = "narrator"

    def _dump_payload(self, messages: Any, tools: Sequence[Dict[str, Any]]) -> None:
        if not self._debug:
            return
        record = {
            "meta": {
                "actor": self.dump_tag,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "model_name": self.config.model,
                "base_url": self.config.base_url,
                "temperature": self.config.temperature,
            },
            "messages": messages,
            "tools": [t.get("function", {}).get("name") for t in tools],
        }
        safe = "".join(ch if ch.isalnum() or ch in ("_", "-", ".") else "_" for ch in self.dump_tag) or "narrator"
        try:
            self._dump_dir.mkdir(parents=True, exist_ok=True)
            with (self._dump_dir / f"{safe}_payload.json").open("w", encoding="utf-8") as f:
                json.dump(record, f, ensure_ascii=False, indent=2, default=str)
        except OSError as exc:
            LOGGER.warning("prompt dump failed: %s", exc)

    async def stream(
        self,
        system_prompt: str,
        messages: Sequence[Dict[str, Any]],
        tools: Sequence[Dict[str, Any]],
    ) -> AsyncIterator[NarratorChunk]:
        formatted = await self.formatter.format(to_msgs(system_prompt, messages))
        self._dump_payload(formatted, tools)
        try:
            res = await self.model(formatted, tools=list(tools) or None)
        except Exception as exc:
            raise _backend_error(exc) from exc

        if not self.config.stream:
            yield NarratorChunk(text=_text_of(res.content), tool_calls=_tool_calls_of(res.content))
            return

        # streamed responses carry the accumulated content so far
        emitted = ""
        last_content: Sequence[Any] = []
        try:
            async for resp in res:
                last_content = resp.content or []
                text = _text_of(last_content)
                delta = _text_delta(emitted, text)
                if delta:
                    emitted = text
                    yield NarratorChunk(text=delta)
        except Exception as exc:
            raise _backend_error(exc) from exc
        calls = _tool_calls_of(last_content)
        if calls:
            yield NarratorChunk(tool_calls=calls)
