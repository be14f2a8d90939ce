"""
Turn Orchestrator

One call to `TurnOrchestrator.run_turn` plays one conversational turn for one
player and yields the turn's events in order:

    turn_start -> (narrative patch | tool_call -> tool_result -> state_update)* -> done | error

- 每个玩家同一时间只允许一个回合（asyncio.Lock，占用时立即拒绝）；不同玩家互不影响。
- narrator 每一步的输出经 StreamingDecoder 逐块解码，叙述只会变长。
- 原生工具调用与 JSON actions 都经 ToolDispatcher.execute 校验后执行；
  工具失败就地报告，不中断回合。
- 回合结束时 ConsistencyGuard 检查叙述；有幻觉且还有重试次数时追加 [SYSTEM ERROR] 再跑一步。
- 取消信号在每一步之前、每个分块之间、每次工具调用之前检查；已执行的工具保留效果。
- 整个回合共用一个 narrator 截止时间；超时后对已收到内容做 finalize，done 标记 truncated。

Every event goes through the EventBus so sequence numbers are monotonic and the
JSONL/story logs see exactly what the caller sees.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Set, Tuple

from config_service import EngineConfig
from eventlog import Event, EventBus, EventType
from narrator.adapter import Narrator, NarratorError, UpstreamTimeout
from narrator.decoder import StreamingDecoder, StructuredNarrative, plain_text_fallback
from narrator.guard import ConsistencyFinding, ConsistencyGuard
from narrator.prompts import (
    battle_user_message,
    build_context_injection,
    build_system_prompt,
    remediation_message,
)
from world.catalog import openai_tool_schemas, tools_for_mode
from world.errors import NotFoundError, StoreUnavailableError
from world.models import ToolCallRecord
from world.store import GameStore
from world.tools import ToolDispatcher, ToolResult

LOGGER = logging.getLogger("chaos_saga.orchestrator")

GM_PREFIX = "/gm"
EMPTY_NARRATIVE = "..."
ACTIONS_ONLY_TEMPLATE = "*（动作已执行: {tools}）*"


@dataclass
class _Turn:
    player_id: str
    number: int
    message: str
    gm: bool
    cancel: asyncio.Event
    deadline: float
    history: List[Dict[str, Any]] = field(default_factory=list)
    records: List[ToolCallRecord] = field(default_factory=list)
    parts: List[str] = field(default_factory=list)
    doc: Optional[StructuredNarrative] = None
    step: int = 0
    tool_rounds: int = 0
    truncated: bool = False
    cancelled: bool = False
    failure: Optional[Tuple[str, str]] = None  # (error_type, message)
    # current narrator step
    decoder: StreamingDecoder = field(default_factory=StreamingDecoder)
    raw: str = ""
    plain_len: int = 0
    calls: List[Dict[str, Any]] = field(default_factory=list)
    offered: Set[str] = field(default_factory=set)

    def narrative(self) -> str:
        text = "\n\n".join(p for p in self.parts if p.strip())
        if text:
            return text
        if self.records:
            return ACTIONS_ONLY_TEMPLATE.format(tools=", ".join(r.name for r in self.records))
        return EMPTY_NARRATIVE

    def partial(self) -> str:
        """Everything the caller has seen so far (for cancelled / failed turns)."""
        current = self.decoder.narrative or (self.raw.strip() if not _looks_structured(self.raw) else "")
        return "\n\n".join(p for p in [*self.parts, current] if p and p.strip())


def _looks_structured(raw: str) -> bool:
    s = raw.lstrip()
    return not s or s[0] in "{`"


class TurnOrchestrator:
    """Sequences decoder, dispatcher and guard for one turn per player."""

    def __init__(
        self,
        store: GameStore,
        dispatcher: ToolDispatcher,
        narrator: Narrator,
        config: Optional[EngineConfig] = None,
        *,
        bus: Optional[EventBus] = None,
        guard: Optional[ConsistencyGuard] = None,
        system_template: Optional[str] = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.narrator = narrator
        self.config = config or EngineConfig()
        self.bus = bus or EventBus()
        self.guard = guard or ConsistencyGuard()
        self.system_template = system_template
        self._locks: Dict[str, asyncio.Lock] = {}
        self._turn_counts: Dict[str, int] = {}

    # ---- public ----
    def busy(self, player_id: str) -> bool:
        lock = self._locks.get(str(player_id))
        return bool(lock and lock.locked())

    async def run_turn(
        self,
        player_id: str,
        message: str,
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[Event]:
        pid = str(player_id)
        lock = self._locks.setdefault(pid, asyncio.Lock())
        if lock.locked():
            LOGGER.info("turn rejected for %s: another turn is in flight", pid)
            yield self.bus.publish(Event(
                EventType.ERROR,
                player=pid,
                data={"message": "该玩家已有进行中的回合，请稍后再试", "error_type": "state_conflict"},
            ))
            return
        try:
            async with lock:
                self._turn_counts[pid] = self._turn_counts.get(pid, 0) + 1
                text = str(message or "")
                t = _Turn(
                    player_id=pid,
                    number=self._turn_counts[pid],
                    message=text,
                    gm=text.lstrip().startswith(GM_PREFIX),
                    cancel=cancel or asyncio.Event(),
                    deadline=asyncio.get_running_loop().time() + float(self.config.narrator.timeout_s),
                )
                try:
                    async for ev in self._play(t):
                        yield ev
                except StoreUnavailableError as exc:
                    LOGGER.error("turn %s/%d aborted: %s", pid, t.number, exc.message)
                    yield self._emit(t, EventType.ERROR, {
                        "message": exc.message,
                        "error_type": exc.error_type,
                        "fatal": True,
                        "narrative": t.partial() or None,
                    })
                except NotFoundError as exc:
                    yield self._emit(t, EventType.ERROR, {"message": exc.message, "error_type": exc.error_type})
        finally:
            # only players with a turn in flight keep a lock
            if not lock.locked() and self._locks.get(pid) is lock:
                del self._locks[pid]

    # ---- turn ----
    def _emit(self, t: _Turn, event_type: EventType, data: Dict[str, Any], *, step: Optional[int] = None) -> Event:
        return self.bus.publish(Event(event_type, player=t.player_id, turn=t.number, step=step, data=data))

    async def _play(self, t: _Turn) -> AsyncIterator[Event]:
        self.store.get_player(t.player_id)
        limit = int(self.config.turn.history_limit)
        history = [{"role": e.role, "content": e.content} for e in self.store.chat_history(t.player_id, limit)]
        in_battle = self._in_battle(t.player_id)
        content = t.message.lstrip()[len(GM_PREFIX):].strip() if t.gm else t.message
        content = content or t.message
        if in_battle:
            content = battle_user_message(content)
        t.history = history + [{"role": "user", "content": content}]
        yield self._emit(t, EventType.TURN_START, {"message": t.message, "inBattle": in_battle, "gm": t.gm})

        finding = ConsistencyFinding()
        remediations = 0
        while True:
            async for ev in self._settle(t):
                yield ev
            if t.cancelled or t.failure:
                break
            finding = self.guard.check(t.narrative(), t.records)
            if not finding.has_hallucination:
                break
            LOGGER.info("turn %s/%d flagged: %s", t.player_id, t.number, finding.reason)
            if t.truncated or remediations >= int(self.config.turn.hallucination_retries):
                break
            remediations += 1
            yield self._emit(t, EventType.SYSTEM, {
                "message": "叙述与工具结果不一致，正在要求重新生成",
                "kind": "remediation",
                "consistency": finding.to_dict(),
            })
            t.history.append({"role": "assistant", "content": t.raw})
            t.history.append({"role": "user", "content": remediation_message(finding)})
            t.parts = []
            t.doc = None

        if t.cancelled:
            yield self._emit(t, EventType.ERROR, {
                "message": "回合已取消",
                "error_type": "cancelled",
                "narrative": t.partial() or None,
                "tools": [r.to_dict() for r in t.records],
            })
            return
        if t.failure:
            error_type, msg = t.failure
            yield self._emit(t, EventType.ERROR, {
                "message": msg,
                "error_type": error_type,
                "narrative": t.partial() or None,
                "tools": [r.to_dict() for r in t.records],
            })
            return

        narrative = t.narrative()
        self.store.append_chat(t.player_id, "user", t.message)
        self.store.append_chat(t.player_id, "assistant", narrative)
        doc = t.doc
        yield self._emit(t, EventType.DONE, {
            "narrative": narrative,
            "thought": doc.thought if doc else None,
            "mood": doc.mood if doc else None,
            "suggestions": list(doc.suggestions) if doc else [],
            "metadata": dict(doc.metadata) if doc else {},
            "tools": [r.to_dict() for r in t.records],
            "consistency": finding.to_dict(),
            "truncated": t.truncated,
            "fallback": bool(doc.fallback) if doc else False,
        }, step=t.step)

    async def _settle(self, t: _Turn) -> AsyncIterator[Event]:
        """Run narrator steps (and their tool rounds) until one ends with narration."""
        while True:
            if t.cancel.is_set():
                t.cancelled = True
                return
            offer = t.tool_rounds < int(self.config.turn.max_tool_rounds)
            async for ev in self._step(t, offer):
                yield ev
            if t.cancelled or t.failure:
                return
            if t.calls and offer and not t.truncated:
                t.tool_rounds += 1
                self._decode_step(t)
                async for ev in self._run_calls(t, t.calls, native=True):
                    yield ev
                if t.cancelled:
                    return
                continue
            if t.calls:
                LOGGER.warning("ignoring %d tool call(s) past the round limit", len(t.calls))
            doc = self._decode_step(t)
            if doc is not None and doc.actions:
                intents = [
                    {"id": f"act-{t.step}-{i}", "name": a["tool"], "input": a.get("args") or {}}
                    for i, a in enumerate(doc.actions)
                ]
                async for ev in self._run_calls(t, intents, native=False):
                    yield ev
            return

    # ---- one narrator step ----
    def _prompt(self, t: _Turn) -> Tuple[str, List[str]]:
        player = self.store.get_player(t.player_id)
        view = self.dispatcher.describe_player(player)
        battle = self.dispatcher.describe_battle(player)
        names = tools_for_mode(in_battle=battle is not None, gm=t.gm)
        system = build_system_prompt(in_battle=battle is not None, gm=t.gm, template=self.system_template)
        return system + "\n\n" + build_context_injection(view, battle), names

    async def _step(self, t: _Turn, offer: bool) -> AsyncIterator[Event]:
        loop = asyncio.get_running_loop()
        attempts = 0
        retries = int(self.config.turn.upstream_retries)
        while True:
            t.step += 1
            t.decoder.reset()
            t.raw = ""
            t.plain_len = 0
            t.calls = []
            system, names = self._prompt(t)
            t.offered = set(names)
            tools = openai_tool_schemas(names) if offer else []
            stream = self.narrator.stream(system, list(t.history), tools)
            try:
                while True:
                    if t.cancel.is_set():
                        t.cancelled = True
                        return
                    remaining = t.deadline - loop.time()
                    if remaining <= 0:
                        raise asyncio.TimeoutError()
                    try:
                        chunk = await asyncio.wait_for(stream.__anext__(), remaining)
                    except StopAsyncIteration:
                        break
                    if chunk.tool_calls:
                        t.calls.extend(chunk.tool_calls)
                    if chunk.text:
                        t.raw += chunk.text
                        patch = self._patch(t, chunk.text)
                        if patch:
                            yield self._emit(t, EventType.NARRATIVE, {"patch": patch}, step=t.step)
            except (asyncio.TimeoutError, UpstreamTimeout):
                t.truncated = True
                LOGGER.warning("narrator timed out for %s/%d after %d chars", t.player_id, t.number, len(t.raw))
                yield self._emit(t, EventType.SYSTEM, {"message": "叙述后端超时，使用已收到的内容", "kind": "timeout"})
                return
            except NarratorError as exc:
                if not t.raw and attempts < retries:
                    attempts += 1
                    LOGGER.warning("narrator error (attempt %d/%d): %s", attempts, retries, exc)
                    yield self._emit(t, EventType.SYSTEM, {"message": f"叙述后端出错，正在重试：{exc}", "kind": "retry", "attempt": attempts})
                    continue
                LOGGER.error("narrator failed for %s/%d: %s", t.player_id, t.number, exc)
                t.failure = ("upstream", f"叙述后端出错：{exc}")
                return
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()
            return

    def _patch(self, t: _Turn, text: str) -> Optional[Dict[str, Any]]:
        patch = t.decoder.append(text)
        if patch is None and not _looks_structured(t.raw):
            # plain text reply: stream it as is, finalize peels the options later
            plain = t.raw.strip()
            if len(plain) > t.plain_len:
                t.plain_len = len(plain)
                patch = {"narrative": plain}
        return patch

    def _decode_step(self, t: _Turn) -> Optional[StructuredNarrative]:
        if not t.raw.strip():
            return None
        doc = t.decoder.finalize() or plain_text_fallback(t.raw)
        t.parts.append(doc.narrative)
        t.doc = doc
        return doc

    # ---- tools ----
    def _in_battle(self, player_id: str) -> bool:
        battle = self.store.get_battle(player_id)
        return battle is not None and battle.active

    async def _run_calls(self, t: _Turn, calls: Sequence[Dict[str, Any]], *, native: bool) -> AsyncIterator[Event]:
        done: List[Tuple[str, str, Dict[str, Any], ToolResult]] = []
        for i, call in enumerate(calls):
            if t.cancel.is_set():
                t.cancelled = True
                break
            name = str(call.get("name") or "")
            args = dict(call.get("input") or {})
            call_id = str(call.get("id") or f"call-{t.step}-{i}")
            yield self._emit(t, EventType.TOOL_CALL, {"tool": name, "status": "pending", "callId": call_id, "args": args}, step=t.step)
            result = self.dispatcher.execute(name, args, t.player_id, allowed=t.offered)
            t.records.append(result.to_record(name, args))
            yield self._emit(t, EventType.TOOL_RESULT, {
                "tool": name,
                "status": "success" if result.success else "failure",
                "callId": call_id,
                "data": result.data,
                "error": result.error,
                "errorType": result.error_type,
                "text": result.text,
            }, step=t.step)
            if result.success and result.state_delta:
                yield self._emit(t, EventType.STATE_UPDATE, {"tool": name, "delta": result.state_delta}, step=t.step)
            done.append((call_id, name, args, result))
            # yield to the loop between tool calls so a cancel request can land
            await asyncio.sleep(0)
        if native and done and not t.cancelled:
            t.history.append({
                "role": "assistant",
                "content": t.raw or None,
                "tool_calls": [{"id": cid, "name": name, "input": args} for cid, name, args, _ in done],
            })
            for cid, name, _, result in done:
                t.history.append({
                    "role": "tool",
                    "id": cid,
                    "name": name,
                    "output": json.dumps(result.to_dict(), ensure_ascii=False, default=str),
                })
