#!/usr/bin/env python3
from __future__ import annotations

"""
Chaos Saga entry point (server + CLI)

职责：
- 加载 configs/engine.json 与 configs/world.json，构造 store / dispatcher / narrator / orchestrator；
- 创建日志上下文（logs/run_events.jsonl + logs/run_story.log）；
- FastAPI：回合以 NDJSON 流式返回，/ws/events 可断线重放全部事件；
- CLI：默认启动服务，--once "消息" 只跑一个回合并逐行打印事件。
"""

import argparse
import asyncio
import json
import logging
import sys
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from config_service import ConfigService, EngineConfig
from eventlog import Event, EventType, LoggingContext, create_logging_context
from narrator.adapter import AgentScopeNarrator, Narrator, NarratorError
from orchestrator import TurnOrchestrator
from world.errors import EngineError
from world.store import GameStore, InMemoryStore, JsonFileStore
from world.tools import ToolDispatcher

LOGGER = logging.getLogger("chaos_saga")

DEFAULT_PLAYER = "player-1"
# EngineError.error_type -> HTTP status
_STATUS_BY_ERROR = {
    "validation": 400,
    "not_found": 404,
    "state_conflict": 409,
    "store_unavailable": 503,
}


def project_root() -> Path:
    here = Path(__file__).resolve()
    for parent in here.parents:
        if (parent / "configs").exists():
            return parent
    return here.parents[1]


# ============================================================
# Runtime wiring
# ============================================================


@dataclass
class Runtime:
    root: Path
    config_service: ConfigService
    config: EngineConfig
    store: GameStore
    dispatcher: ToolDispatcher
    orchestrator: TurnOrchestrator
    log_ctx: LoggingContext

    def close(self) -> None:
        self.log_ctx.close()


def _open_store(config_service: ConfigService, store_path: Optional[str]) -> InMemoryStore:
    store: InMemoryStore = JsonFileStore(Path(store_path)) if store_path else InMemoryStore()
    if not store.list_players():
        store.load_seed(config_service.load_world())
    return store


def _bootstrap_runtime(
    root: Optional[Path] = None,
    *,
    store_path: Optional[str] = None,
    debug_prompts: bool = False,
    narrator: Optional[Narrator] = None,
) -> Runtime:
    """Build every collaborator once; configuration is passed down explicitly."""
    root = root or project_root()
    cfg_service = ConfigService(root)
    config = cfg_service.load_engine()
    store = _open_store(cfg_service, store_path)
    dispatcher = ToolDispatcher(store, config.rules)
    if narrator is None:
        narrator = AgentScopeNarrator(
            config.narrator,
            debug_dump_prompts=debug_prompts,
            dump_dir=root / "logs" / "prompts",
        )
    log_ctx = create_logging_context(base_path=root)
    orchestrator = TurnOrchestrator(store, dispatcher, narrator, config, bus=log_ctx.bus)
    LOGGER.info("runtime ready: model=%s base_url=%s", config.narrator.model, config.narrator.base_url)
    return Runtime(
        root=root,
        config_service=cfg_service,
        config=config,
        store=store,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
        log_ctx=log_ctx,
    )


# ============================================================
# Server
# ============================================================


class _EventBridge:
    """In-memory event buffer + websocket broadcaster.

    - Keeps a ring buffer of recent events for replay on reconnect.
    - Broadcasts every new event to connected WebSocket clients.
    """

    def __init__(self, maxlen: int = 2000) -> None:
        self._buf: deque[dict] = deque(maxlen=maxlen)
        self._clients: set = set()  # set[WebSocket]
        self._last_seq: int = 0
        self._lock = asyncio.Lock()
        self._pending: Set[asyncio.Task] = set()

    @property
    def last_sequence(self) -> int:
        return self._last_seq

    async def register(self, ws) -> None:
        await ws.accept()
        async with self._lock:
            self._clients.add(ws)

    async def unregister(self, ws) -> None:
        async with self._lock:
            self._clients.discard(ws)

    def replay_since(self, since: int) -> list[dict]:
        return [ev for ev in list(self._buf) if int(ev.get("sequence", 0) or 0) > since]

    def handle(self, event: Event) -> None:
        """EventBus handler: buffer now, broadcast on the running loop."""
        event_dict = event.to_dict()
        self._last_seq = max(self._last_seq, int(event_dict.get("sequence", 0) or 0))
        self._buf.append(event_dict)
        if not self._clients:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._broadcast(event_dict))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _broadcast(self, event_dict: dict) -> None:
        dead = []
        for ws in list(self._clients):
            try:
                await ws.send_json({"type": "event", "event": event_dict})
            except (WebSocketDisconnect, RuntimeError, OSError):
                dead.append(ws)
        for ws in dead:
            await self.unregister(ws)


class _ServerState:
    def __init__(self, runtime: Runtime) -> None:
        self.runtime = runtime
        self.bridge = _EventBridge()
        self._unsubscribe = runtime.log_ctx.bus.subscribe(self.bridge.handle)

    def close(self) -> None:
        self._unsubscribe()


def _error_body(exc: EngineError) -> Dict[str, Any]:
    body: Dict[str, Any] = {"ok": False, "message": exc.message, "error_type": exc.error_type}
    if exc.param:
        body["param"] = exc.param
    return body


async def _watch_disconnect(request: Request, cancel: asyncio.Event, interval: float = 0.5) -> None:
    while not cancel.is_set():
        if await request.is_disconnected():
            LOGGER.info("client disconnected; cancelling turn")
            cancel.set()
            return
        await asyncio.sleep(interval)


def _make_app(runtime: Runtime, *, allow_cors_from: Optional[list[str]] = None) -> FastAPI:
    app = FastAPI(title="Chaos Saga")
    state = _ServerState(runtime)
    app.state.server = state

    # CORS if requested (for cross-origin frontends like dev servers)
    if allow_cors_from:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_cors_from,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(EngineError)
    async def _engine_error(request: Request, exc: EngineError):
        return JSONResponse(_error_body(exc), status_code=_STATUS_BY_ERROR.get(exc.error_type, 500))

    @app.get("/healthz")
    async def _healthz():
        return {"ok": True}

    @app.get("/api/players/{player_id}")
    async def api_player(player_id: str):
        player = runtime.store.get_player(player_id)
        return {
            "ok": True,
            "player": runtime.dispatcher.describe_player(player),
            "battle": runtime.dispatcher.describe_battle(player),
        }

    @app.post("/api/turn")
    async def api_turn(payload: dict, request: Request):
        """Play one turn; the body is streamed as NDJSON, one event per line.

        Body: {"playerId": "player-1", "message": "......"}
        """
        pid = str(payload.get("playerId") or "").strip()
        message = str(payload.get("message") or "").strip()
        if not pid or not message:
            return JSONResponse({"ok": False, "message": "playerId/message required"}, status_code=400)
        runtime.store.get_player(pid)
        cancel = asyncio.Event()

        async def _events():
            watcher = asyncio.create_task(_watch_disconnect(request, cancel))
            try:
                async for ev in runtime.orchestrator.run_turn(pid, message, cancel):
                    yield json.dumps(ev.to_dict(), ensure_ascii=False) + "\n"
            finally:
                cancel.set()
                watcher.cancel()

        return StreamingResponse(_events(), media_type="application/x-ndjson")

    @app.post("/api/tools/{name}")
    async def api_tool(name: str, payload: dict):
        """Run one tool directly (debugging / quick actions).

        Body: {"playerId": "player-1", "args": {...}}
        """
        pid = str(payload.get("playerId") or "").strip()
        if not pid:
            return JSONResponse({"ok": False, "message": "playerId required"}, status_code=400)
        if runtime.orchestrator.busy(pid):
            return JSONResponse({"ok": False, "message": "turn in progress"}, status_code=409)
        args = payload.get("args") or {}
        if not isinstance(args, dict):
            return JSONResponse({"ok": False, "message": "args must be an object"}, status_code=400)
        result = runtime.dispatcher.execute(str(name), args, pid)
        return {"ok": result.success, "result": result.to_dict()}

    @app.get("/api/config/{name}")
    async def api_get_config(name: str):
        try:
            data = runtime.config_service.read(str(name))
        except KeyError:
            return JSONResponse({"ok": False, "message": f"unsupported config: {name}"}, status_code=404)
        except FileNotFoundError:
            return JSONResponse({"ok": False, "message": f"config not found: {name}"}, status_code=404)
        return {"ok": True, "name": name, "data": data}

    @app.post("/api/config/{name}")
    async def api_set_config(name: str, payload: dict):
        ok, msg = runtime.config_service.write(str(name), dict(payload or {}))
        if not ok:
            status = 404 if msg == "unsupported config" else 400
            return JSONResponse({"ok": False, "message": msg}, status_code=status)
        # takes effect on next start
        return {"ok": True, "message": msg}

    @app.websocket("/ws/events")
    async def ws_events(ws: WebSocket):
        await state.bridge.register(ws)
        try:
            try:
                since = int(ws.query_params.get("since") or "0")
            except ValueError:
                since = 0
            # hello + replay
            await ws.send_json({"type": "hello", "last_sequence": state.bridge.last_sequence})
            for ev in state.bridge.replay_since(since):
                await ws.send_json({"type": "event", "event": ev})
            # keep-alive; actual events are pushed by bridge
            while True:
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            await state.bridge.unregister(ws)

    return app


def _run_server(runtime: Runtime, host: str, port: int, *, allow_cors_from: Optional[list[str]] = None, log_level: str = "info") -> None:
    app = _make_app(runtime, allow_cors_from=allow_cors_from)
    try:
        uvicorn.run(app, host=host, port=port, reload=False, log_level=log_level.lower())
    finally:
        app.state.server.close()
        runtime.close()


# ============================================================
# CLI
# ============================================================


async def _run_once(runtime: Runtime, player_id: str, message: str) -> int:
    code = 0
    async for ev in runtime.orchestrator.run_turn(player_id, message):
        print(json.dumps(ev.to_dict(), ensure_ascii=False), flush=True)
        if ev.event_type is EventType.ERROR:
            code = 1
    return code


def _parse_args(argv: List[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Chaos Saga turn engine server/CLI")
    p.add_argument("--once", metavar="MESSAGE", default=None, help="Run a single turn with MESSAGE, print its events and exit")
    p.add_argument("--player", default=DEFAULT_PLAYER, help=f"Player id for --once (default {DEFAULT_PLAYER})")
    p.add_argument("--host", default="127.0.0.1", help="Server host (default 127.0.0.1)")
    p.add_argument("--port", type=int, default=8000, help="Server port (default 8000)")
    p.add_argument("--cors", default="", help="Comma separated origins to allow CORS (empty means disabled)")
    p.add_argument("--store", default="", help="JSON save file; empty keeps state in memory only")
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level (default INFO)")
    p.add_argument("--debug-prompts", action="store_true", help="Dump narrator payloads to logs/prompts/")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(list(sys.argv[1:] if argv is None else argv))
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        runtime = _bootstrap_runtime(store_path=args.store or None, debug_prompts=args.debug_prompts)
    except NarratorError as exc:
        print(f"narrator backend unavailable: {exc}", file=sys.stderr)
        return 2
    except (OSError, ValueError) as exc:
        print(f"failed to load configs: {exc}", file=sys.stderr)
        return 2

    if args.once is not None:
        try:
            return asyncio.run(_run_once(runtime, args.player, args.once))
        except KeyboardInterrupt:
            return 130
        finally:
            runtime.close()

    allow_origins = [o.strip() for o in args.cors.split(",") if o.strip()] or None
    _run_server(runtime, args.host, args.port, allow_cors_from=allow_origins, log_level=args.log_level)
    return 0


if __name__ == "__main__":
    sys.exit(main())
