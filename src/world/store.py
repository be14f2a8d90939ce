"""Persistent store for players, areas, quests, battles and the turn logs.

`GameStore` is the interface the dispatcher and orchestrator depend on.
`InMemoryStore` keeps records as deep copies (callers always mutate their own
copy and commit with `save_*`), `JsonFileStore` adds an atomic JSON snapshot
after every write.
"""
from __future__ import annotations

import copy
import json
import logging
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from world.errors import NotFoundError, StoreUnavailableError
from world.models import (
    ActionLogEntry,
    Area,
    BattleState,
    ChatEntry,
    Player,
    Quest,
    to_dict,
)

LOGGER = logging.getLogger("chaos_saga.store")


class GameStore(ABC):
    """CRUD surface consumed by the engine."""

    @abstractmethod
    def get_player(self, player_id: str) -> Player:
        raise NotImplementedError

    @abstractmethod
    def save_player(self, player: Player) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_area(self, area_id: str) -> Area:
        raise NotImplementedError

    @abstractmethod
    def save_area(self, area: Area) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_areas(self) -> List[Area]:
        raise NotImplementedError

    @abstractmethod
    def get_quest(self, quest_id: str) -> Quest:
        raise NotImplementedError

    @abstractmethod
    def save_quest(self, quest: Quest) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_quests(self) -> List[Quest]:
        raise NotImplementedError

    @abstractmethod
    def get_battle(self, player_id: str) -> Optional[BattleState]:
        raise NotImplementedError

    @abstractmethod
    def save_battle(self, battle: BattleState) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_battle(self, player_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def append_chat(self, player_id: str, role: str, content: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def chat_history(self, player_id: str, limit: int = 20) -> List[ChatEntry]:
        raise NotImplementedError

    @abstractmethod
    def append_log(self, player_id: str, kind: str, text: str, data: Optional[Dict[str, Any]] = None) -> None:
        raise NotImplementedError

    @abstractmethod
    def action_log(self, player_id: str, limit: int = 50) -> List[ActionLogEntry]:
        raise NotImplementedError

    def new_id(self, prefix: str = "id") -> str:
        return f"{prefix}-{uuid.uuid4().hex[:10]}"

    def find_quest(self, ref: str) -> Optional[Quest]:
        """Resolve a quest by id, exact name, then unique partial name."""
        key = str(ref or "").strip()
        if not key:
            return None
        quests = self.list_quests()
        for q in quests:
            if q.id == key:
                return q
        for q in quests:
            if q.name == key:
                return q
        partial = [q for q in quests if key in q.name]
        return partial[0] if len(partial) == 1 else None


class InMemoryStore(GameStore):
    def __init__(self) -> None:
        self.available = True
        self._players: Dict[str, Player] = {}
        self._areas: Dict[str, Area] = {}
        self._quests: Dict[str, Quest] = {}
        self._battles: Dict[str, BattleState] = {}
        self._chat: Dict[str, List[ChatEntry]] = {}
        self._logs: Dict[str, List[ActionLogEntry]] = {}

    def _check(self) -> None:
        if not self.available:
            raise StoreUnavailableError("存储不可用")

    def _changed(self) -> None:
        """Hook for subclasses that persist after every write."""

    # ---- players ----
    def get_player(self, player_id: str) -> Player:
        self._check()
        p = self._players.get(str(player_id))
        if p is None:
            raise NotFoundError(f"玩家不存在: {player_id}", param="playerId")
        return copy.deepcopy(p)

    def save_player(self, player: Player) -> None:
        self._check()
        self._players[player.id] = copy.deepcopy(player)
        self._changed()

    def list_players(self) -> List[Player]:
        self._check()
        return [copy.deepcopy(p) for p in self._players.values()]

    # ---- areas ----
    def get_area(self, area_id: str) -> Area:
        self._check()
        a = self._areas.get(str(area_id))
        if a is None:
            raise NotFoundError(f"区域不存在: {area_id}", param="areaId")
        return copy.deepcopy(a)

    def save_area(self, area: Area) -> None:
        self._check()
        self._areas[area.id] = copy.deepcopy(area)
        self._changed()

    def list_areas(self) -> List[Area]:
        self._check()
        return [copy.deepcopy(a) for a in self._areas.values()]

    # ---- quests ----
    def get_quest(self, quest_id: str) -> Quest:
        self._check()
        q = self._quests.get(str(quest_id))
        if q is None:
            raise NotFoundError(f"任务不存在: {quest_id}", param="questId")
        return copy.deepcopy(q)

    def save_quest(self, quest: Quest) -> None:
        self._check()
        self._quests[quest.id] = copy.deepcopy(quest)
        self._changed()

    def list_quests(self) -> List[Quest]:
        self._check()
        return [copy.deepcopy(q) for q in self._quests.values()]

    # ---- battles (one per player) ----
    def get_battle(self, player_id: str) -> Optional[BattleState]:
        self._check()
        b = self._battles.get(str(player_id))
        return copy.deepcopy(b) if b is not None else None

    def save_battle(self, battle: BattleState) -> None:
        self._check()
        self._battles[battle.player_id] = copy.deepcopy(battle)
        self._changed()

    def delete_battle(self, player_id: str) -> None:
        self._check()
        self._battles.pop(str(player_id), None)
        self._changed()

    # ---- chat / audit log ----
    def append_chat(self, player_id: str, role: str, content: str) -> None:
        self._check()
        self._chat.setdefault(str(player_id), []).append(ChatEntry(role=role, content=content))
        self._changed()

    def chat_history(self, player_id: str, limit: int = 20) -> List[ChatEntry]:
        self._check()
        items = self._chat.get(str(player_id), [])
        return [copy.deepcopy(x) for x in items[-max(0, int(limit)):]] if limit else []

    def append_log(self, player_id: str, kind: str, text: str, data: Optional[Dict[str, Any]] = None) -> None:
        self._check()
        self._logs.setdefault(str(player_id), []).append(ActionLogEntry(kind=kind, text=text, data=dict(data or {})))
        self._changed()

    def action_log(self, player_id: str, limit: int = 50) -> List[ActionLogEntry]:
        self._check()
        items = self._logs.get(str(player_id), [])
        return [copy.deepcopy(x) for x in items[-max(0, int(limit)):]] if limit else []

    # ---- seeding / snapshots ----
    def load_seed(self, seed: Dict[str, Any]) -> None:
        """Load players/areas/quests from a world config object."""
        for a in seed.get("areas") or []:
            if isinstance(a, dict):
                area = Area.from_dict(a)
                self._areas[area.id] = area
        for q in seed.get("quests") or []:
            if isinstance(q, dict):
                quest = Quest.from_dict(q)
                self._quests[quest.id] = quest
        for p in seed.get("players") or []:
            if isinstance(p, dict):
                player = Player.from_dict(p)
                if not player.current_node_id and player.current_area_id in self._areas:
                    nodes = self._areas[player.current_area_id].nodes
                    if nodes:
                        player.current_node_id = nodes[0].id
                if player.current_node_id and player.current_node_id not in player.explored_nodes:
                    player.explored_nodes.append(player.current_node_id)
                self._players[player.id] = player
        LOGGER.info(
            "seed loaded: %d players, %d areas, %d quests",
            len(self._players), len(self._areas), len(self._quests),
        )
        self._changed()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "players": [to_dict(p) for p in self._players.values()],
            "areas": [to_dict(a) for a in self._areas.values()],
            "quests": [to_dict(q) for q in self._quests.values()],
            "battles": [to_dict(b) for b in self._battles.values()],
            "chat": {k: [to_dict(e) for e in v] for k, v in self._chat.items()},
            "logs": {k: [to_dict(e) for e in v] for k, v in self._logs.items()},
        }

    def restore(self, snap: Dict[str, Any]) -> None:
        self.load_seed({k: snap.get(k) for k in ("players", "areas", "quests")})
        for b in snap.get("battles") or []:
            battle = BattleState.from_dict(b)
            self._battles[battle.player_id] = battle
        for pid, entries in (snap.get("chat") or {}).items():
            self._chat[pid] = [ChatEntry(**e) for e in entries]
        for pid, entries in (snap.get("logs") or {}).items():
            self._logs[pid] = [ActionLogEntry(**e) for e in entries]


class JsonFileStore(InMemoryStore):
    """In-memory store mirrored to one JSON file with atomic replace."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self._path = Path(path)
        self._loading = False
        if self._path.exists():
            self._loading = True
            try:
                with self._path.open("r", encoding="utf-8") as f:
                    self.restore(json.load(f))
            finally:
                self._loading = False

    @property
    def path(self) -> Path:
        return self._path

    def _changed(self) -> None:
        if self._loading:
            return
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(self.snapshot(), f, ensure_ascii=False, indent=2)
                f.write("\n")
            tmp.replace(self._path)
        except OSError as exc:
            raise StoreUnavailableError(f"写入存档失败: {exc}") from exc
