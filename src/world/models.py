# Game data model: actors, skills, battle records, areas, quests and inventory.
from __future__ import annotations
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional
import math
import time


def _get(d: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first present key (snake_case or camelCase spelling)."""
    for k in keys:
        if k in d and d[k] is not None:
            return d[k]
    return default


def _int(v: Any, default: int = 0) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


def now_ts() -> float:
    return time.time()


# ---- level curve (shared by battle rewards and GM modifications) ----
MAX_LEVEL = 100


def exp_to_next_level(level: int) -> int:
    return int(math.floor(100 * (max(1, int(level)) ** 1.5)))


def base_stats_for_level(level: int) -> Dict[str, int]:
    lv = max(1, int(level))
    return {
        "max_hp": 80 + 20 * lv,
        "max_mp": 40 + 10 * lv,
        "attack": 8 + 2 * lv,
        "defense": int(math.floor(4 + 1.5 * lv)),
        "speed": 8 + 2 * lv,
    }


STACKABLE_TYPES = frozenset({"consumable", "material", "quest_item", "collectible"})
EQUIPMENT_TYPES = frozenset({"weapon", "armor", "accessory", "helmet", "boots"})


class BattleStatus(str, Enum):
    ACTIVE = "active"
    WON = "won"
    LOST = "lost"
    FLED = "fled"


@dataclass
class Skill:
    name: str
    damage: float = 1.0  # multiplier on the caster's attack
    mp_cost: int = 0
    cooldown: int = 0
    effect: str = "attack"  # attack | heal | aoe | buff
    element: str = "none"
    unlocked_by_phase: Optional[float] = None
    priority: int = 0
    equipped: bool = True
    id: str = ""
    description: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            self.id = self.name

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Skill":
        phase = _get(d, "unlocked_by_phase", "unlockedByPhase")
        return Skill(
            name=str(d.get("name") or ""),
            damage=float(_get(d, "damage", default=1.0)),
            mp_cost=_int(_get(d, "mp_cost", "mpCost", default=0)),
            cooldown=_int(_get(d, "cooldown", default=0)),
            effect=str(_get(d, "effect", "type", default="attack")),
            element=str(_get(d, "element", default="none")),
            unlocked_by_phase=float(phase) if phase is not None else None,
            priority=_int(_get(d, "priority", default=0)),
            equipped=bool(_get(d, "equipped", default=True)),
            id=str(_get(d, "id", default="")),
            description=str(_get(d, "description", default="")),
        )


@dataclass
class Actor:
    name: str = ""
    hp: int = 1
    max_hp: int = 1
    mp: int = 0
    max_mp: int = 0
    attack: int = 1
    defense: int = 0
    speed: int = 1
    level: int = 1
    element: str = "none"
    skills: List[Skill] = field(default_factory=list)
    statuses: List[str] = field(default_factory=list)

    @property
    def alive(self) -> bool:
        return self.hp > 0

    @property
    def hp_fraction(self) -> float:
        if self.max_hp <= 0:
            return 0.0
        return max(0.0, self.hp) / float(self.max_hp)

    def take_damage(self, amount: int) -> int:
        before = self.hp
        self.hp = max(0, self.hp - max(0, int(amount)))
        return before - self.hp

    def heal(self, amount: int) -> int:
        before = self.hp
        self.hp = min(self.max_hp, self.hp + max(0, int(amount)))
        return self.hp - before

    def restore_mp(self, amount: int) -> int:
        before = self.mp
        self.mp = min(self.max_mp, self.mp + max(0, int(amount)))
        return self.mp - before

    def find_skill(self, ref: str) -> Optional[Skill]:
        ref = str(ref or "").strip()
        for s in self.skills:
            if s.id == ref or s.name == ref:
                return s
        return None

    def stats_brief(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "level": self.level,
            "hp": self.hp,
            "maxHp": self.max_hp,
            "mp": self.mp,
            "maxMp": self.max_mp,
            "attack": self.attack,
            "defense": self.defense,
            "speed": self.speed,
            "element": self.element,
        }


def _actor_kwargs(d: Dict[str, Any]) -> Dict[str, Any]:
    hp = _int(_get(d, "hp", default=1), 1)
    mp = _int(_get(d, "mp", default=0))
    return dict(
        name=str(d.get("name") or ""),
        hp=hp,
        max_hp=_int(_get(d, "max_hp", "maxHp", default=hp), hp),
        mp=mp,
        max_mp=_int(_get(d, "max_mp", "maxMp", default=mp), mp),
        attack=_int(_get(d, "attack", default=1), 1),
        defense=_int(_get(d, "defense", default=0)),
        speed=_int(_get(d, "speed", default=1), 1),
        level=_int(_get(d, "level", default=1), 1),
        element=str(_get(d, "element", default="none")),
        skills=[Skill.from_dict(s) for s in (d.get("skills") or []) if isinstance(s, dict)],
        statuses=[str(x) for x in (d.get("statuses") or [])],
    )


@dataclass
class InventoryItem:
    name: str
    type: str = "material"
    quality: str = "common"
    quantity: int = 1
    stats: Dict[str, Any] = field(default_factory=dict)
    equipped: bool = False
    special_effect: Optional[str] = None
    skill: Optional[Skill] = None
    id: str = ""

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "InventoryItem":
        sk = _get(d, "skill", "skillData")
        return InventoryItem(
            name=str(d.get("name") or ""),
            type=str(_get(d, "type", default="material")),
            quality=str(_get(d, "quality", default="common")),
            quantity=_int(_get(d, "quantity", default=1), 1),
            stats=dict(_get(d, "stats", default={}) or {}),
            equipped=bool(_get(d, "equipped", default=False)),
            special_effect=_get(d, "special_effect", "specialEffect"),
            skill=Skill.from_dict(sk) if isinstance(sk, dict) else None,
            id=str(_get(d, "id", default="")),
        )

    def brief(self) -> Dict[str, Any]:
        out = {"id": self.id, "name": self.name, "type": self.type, "quality": self.quality, "quantity": self.quantity}
        if self.equipped:
            out["equipped"] = True
        return out


@dataclass
class QuestObjective:
    description: str
    target_type: str = ""
    target_id: str = ""
    target_count: int = 1

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "QuestObjective":
        return QuestObjective(
            description=str(d.get("description") or ""),
            target_type=str(_get(d, "target_type", "targetType", default="")),
            target_id=str(_get(d, "target_id", "targetId", default="")),
            target_count=max(1, _int(_get(d, "target_count", "targetCount", default=1), 1)),
        )


@dataclass
class Quest:
    id: str
    name: str
    description: str = ""
    type: str = "fetch"
    npc_id: str = ""
    objectives: List[QuestObjective] = field(default_factory=list)
    rewards: Dict[str, Any] = field(default_factory=dict)
    special_condition: Optional[str] = None

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Quest":
        return Quest(
            id=str(d.get("id") or ""),
            name=str(d.get("name") or ""),
            description=str(d.get("description") or ""),
            type=str(d.get("type") or "fetch"),
            npc_id=str(_get(d, "npc_id", "npcId", default="")),
            objectives=[QuestObjective.from_dict(o) for o in (d.get("objectives") or []) if isinstance(o, dict)],
            rewards=dict(d.get("rewards") or {}),
            special_condition=_get(d, "special_condition", "specialCondition"),
        )


@dataclass
class PlayerQuest:
    quest_id: str
    status: str = "active"  # active | completed | abandoned
    progress: List[Dict[str, Any]] = field(default_factory=list)
    rewarded: bool = False

    @property
    def all_completed(self) -> bool:
        return bool(self.progress) and all(bool(p.get("completed")) for p in self.progress)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "PlayerQuest":
        return PlayerQuest(
            quest_id=str(_get(d, "quest_id", "questId", default="")),
            status=str(d.get("status") or "active"),
            progress=[dict(p) for p in (d.get("progress") or []) if isinstance(p, dict)],
            rewarded=bool(d.get("rewarded", False)),
        )


@dataclass
class Player(Actor):
    id: str = ""
    exp: int = 0
    gold: int = 0
    spirit_stones: int = 0
    inventory: List[InventoryItem] = field(default_factory=list)
    current_area_id: str = ""
    current_node_id: str = ""
    explored_nodes: List[str] = field(default_factory=list)
    quests: List[PlayerQuest] = field(default_factory=list)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Player":
        return Player(
            id=str(d.get("id") or ""),
            exp=_int(d.get("exp")),
            gold=_int(d.get("gold")),
            spirit_stones=_int(_get(d, "spirit_stones", "spiritStones", default=0)),
            inventory=[InventoryItem.from_dict(i) for i in (d.get("inventory") or []) if isinstance(i, dict)],
            current_area_id=str(_get(d, "current_area_id", "currentAreaId", default="")),
            current_node_id=str(_get(d, "current_node_id", "currentNodeId", default="")),
            explored_nodes=[str(x) for x in (_get(d, "explored_nodes", "exploredNodes", default=[]) or [])],
            quests=[PlayerQuest.from_dict(q) for q in (d.get("quests") or []) if isinstance(q, dict)],
            **_actor_kwargs(d),
        )

    def find_item(self, ref: Any) -> Optional[InventoryItem]:
        """Resolve an inventory item by id, exact name, then unique partial name."""
        key = str(ref or "").strip()
        if not key:
            return None
        for it in self.inventory:
            if it.id == key:
                return it
        for it in self.inventory:
            if it.name == key:
                return it
        partial = [it for it in self.inventory if key in it.name]
        if len(partial) == 1:
            return partial[0]
        return None

    def add_item(self, item: InventoryItem, *, item_id: str = "") -> InventoryItem:
        """Put an item into the bag; stackable kinds merge with a same-named stack."""
        if item.type in STACKABLE_TYPES:
            for it in self.inventory:
                if it.name == item.name and it.type == item.type and it.quality == item.quality:
                    it.quantity += max(1, int(item.quantity))
                    return it
        if not item.id:
            item.id = item_id or f"item-{len(self.inventory) + 1}-{int(now_ts() * 1000) % 100000}"
        self.inventory.append(item)
        return item

    def remove_item(self, item: InventoryItem, quantity: int = 1) -> int:
        """Take `quantity` from a stack, dropping the stack when it runs out."""
        qty = min(max(1, int(quantity)), item.quantity)
        item.quantity -= qty
        if item.quantity <= 0:
            self.inventory = [it for it in self.inventory if it is not item]
        return qty

    def equipped_skills(self) -> List[Skill]:
        return [s for s in self.skills if s.equipped]

    def quest_record(self, quest_id: str) -> Optional[PlayerQuest]:
        for q in self.quests:
            if q.quest_id == quest_id:
                return q
        return None

    def active_quests(self) -> List[PlayerQuest]:
        return [q for q in self.quests if q.status == "active"]


@dataclass
class BattlePhase:
    hp_threshold: float
    unlocked_skills: List[str] = field(default_factory=list)
    description: str = ""

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "BattlePhase":
        return BattlePhase(
            hp_threshold=float(_get(d, "hp_threshold", "hpThreshold", default=0.0)),
            unlocked_skills=[str(x) for x in (_get(d, "unlocked_skills", "unlockedSkills", default=[]) or [])],
            description=str(d.get("description") or ""),
        )


@dataclass
class Drop:
    name: str
    type: str = "material"
    quality: str = "common"
    chance: float = 1.0
    quantity: int = 1
    stats: Dict[str, Any] = field(default_factory=dict)
    skill: Optional[Skill] = None

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Drop":
        sk = _get(d, "skill", "skillData")
        if isinstance(sk, dict) and not sk.get("name"):
            sk = dict(sk, name=d.get("name"))
        return Drop(
            name=str(d.get("name") or ""),
            type=str(d.get("type") or "material"),
            quality=str(d.get("quality") or "common"),
            chance=float(_get(d, "chance", default=1.0)),
            quantity=max(1, _int(_get(d, "quantity", default=1), 1)),
            stats=dict(d.get("stats") or {}),
            skill=Skill.from_dict(sk) if isinstance(sk, dict) else None,
        )


@dataclass
class EnemyTemplate:
    name: str
    level: int = 1
    element: str = "none"
    min_count: int = 1
    max_count: int = 1
    description: str = ""
    exp: Optional[int] = None
    gold: Optional[int] = None
    hp: Optional[int] = None
    mp: Optional[int] = None
    attack: Optional[int] = None
    defense: Optional[int] = None
    speed: Optional[int] = None
    skills: List[Skill] = field(default_factory=list)
    phases: List[BattlePhase] = field(default_factory=list)
    drops: List[Drop] = field(default_factory=list)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "EnemyTemplate":
        def _opt(*keys: str) -> Optional[int]:
            v = _get(d, *keys)
            return None if v is None else _int(v)

        # a fixed "count" is shorthand for min=max
        count = _get(d, "count")
        lo = _int(_get(d, "min_count", "minCount", default=count if count is not None else 1), 1)
        hi = _int(_get(d, "max_count", "maxCount", default=count if count is not None else lo), lo)
        return EnemyTemplate(
            name=str(d.get("name") or ""),
            level=max(1, _int(_get(d, "level", default=1), 1)),
            element=str(_get(d, "element", default="none")),
            min_count=max(1, lo),
            max_count=max(max(1, lo), hi),
            description=str(d.get("description") or ""),
            exp=_opt("exp"),
            gold=_opt("gold"),
            hp=_opt("hp"),
            mp=_opt("mp"),
            attack=_opt("attack"),
            defense=_opt("defense"),
            speed=_opt("speed"),
            skills=[Skill.from_dict(s) for s in (d.get("skills") or []) if isinstance(s, dict)],
            phases=[BattlePhase.from_dict(p) for p in (d.get("phases") or []) if isinstance(p, dict)],
            drops=[Drop.from_dict(x) for x in (d.get("drops") or []) if isinstance(x, dict)],
        )


@dataclass
class Enemy(Actor):
    index: int = 0
    template: str = ""
    description: str = ""
    exp: int = 0
    gold: int = 0
    drops: List[Drop] = field(default_factory=list)
    phases: List[BattlePhase] = field(default_factory=list)
    cooldowns: Dict[str, int] = field(default_factory=dict)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Enemy":
        return Enemy(
            index=_int(d.get("index")),
            template=str(d.get("template") or ""),
            description=str(d.get("description") or ""),
            exp=_int(d.get("exp")),
            gold=_int(d.get("gold")),
            drops=[Drop.from_dict(x) for x in (d.get("drops") or []) if isinstance(x, dict)],
            phases=[BattlePhase.from_dict(p) for p in (d.get("phases") or []) if isinstance(p, dict)],
            cooldowns={str(k): _int(v) for k, v in (d.get("cooldowns") or {}).items()},
            **_actor_kwargs(d),
        )


@dataclass
class BattleState:
    id: str
    player_id: str
    enemies: List[Enemy] = field(default_factory=list)
    round_number: int = 1
    status: BattleStatus = BattleStatus.ACTIVE
    # enemy index -> thresholds that already fired
    triggered_phases: Dict[int, List[float]] = field(default_factory=dict)
    log: List[str] = field(default_factory=list)
    player_cooldowns: Dict[str, int] = field(default_factory=dict)
    area_id: str = ""
    node_id: str = ""
    rewards: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=now_ts)

    @property
    def active(self) -> bool:
        return self.status is BattleStatus.ACTIVE

    def living_enemies(self) -> List[Enemy]:
        return [e for e in self.enemies if e.alive]

    def participants(self, player: Actor) -> List[Actor]:
        """The player first, then enemies in list order."""
        return [player, *self.enemies]

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "BattleState":
        return BattleState(
            id=str(d.get("id") or ""),
            player_id=str(d.get("player_id") or ""),
            enemies=[Enemy.from_dict(e) for e in (d.get("enemies") or []) if isinstance(e, dict)],
            round_number=_int(d.get("round_number"), 1),
            status=BattleStatus(str(d.get("status") or "active")),
            triggered_phases={int(k): [float(x) for x in v] for k, v in (d.get("triggered_phases") or {}).items()},
            log=[str(x) for x in (d.get("log") or [])],
            player_cooldowns={str(k): _int(v) for k, v in (d.get("player_cooldowns") or {}).items()},
            area_id=str(d.get("area_id") or ""),
            node_id=str(d.get("node_id") or ""),
            rewards=dict(d.get("rewards") or {}),
            created_at=float(d.get("created_at") or now_ts()),
        )


@dataclass
class AreaNode:
    id: str
    name: str
    type: str = "safe"  # safe | battle | npc | boss | event | shop
    description: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "AreaNode":
        return AreaNode(
            id=str(d.get("id") or ""),
            name=str(d.get("name") or ""),
            type=str(d.get("type") or "safe"),
            description=str(d.get("description") or ""),
            data=dict(d.get("data") or {}),
        )

    def npcs(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        npc = self.data.get("npc")
        if isinstance(npc, dict):
            out.append(npc)
        for extra in self.data.get("npcs") or []:
            if isinstance(extra, dict):
                out.append(extra)
        return out


@dataclass
class Area:
    id: str
    name: str
    description: str = ""
    theme: str = ""
    recommended_level: int = 1
    nodes: List[AreaNode] = field(default_factory=list)
    connections: List[List[str]] = field(default_factory=list)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Area":
        return Area(
            id=str(d.get("id") or ""),
            name=str(d.get("name") or ""),
            description=str(d.get("description") or ""),
            theme=str(d.get("theme") or ""),
            recommended_level=_int(_get(d, "recommended_level", "recommendedLevel", default=1), 1),
            nodes=[AreaNode.from_dict(n) for n in (d.get("nodes") or []) if isinstance(n, dict)],
            connections=[[str(a), str(b)] for a, b in (tuple(c)[:2] for c in (d.get("connections") or []) if len(c) >= 2)],
        )

    def node(self, node_id: str) -> Optional[AreaNode]:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def find_node(self, ref: str) -> Optional[AreaNode]:
        key = str(ref or "").strip()
        found = self.node(key)
        if found:
            return found
        for n in self.nodes:
            if n.name == key:
                return n
        partial = [n for n in self.nodes if key and key in n.name]
        return partial[0] if len(partial) == 1 else None

    def neighbors(self, node_id: str) -> List[str]:
        out: List[str] = []
        for a, b in self.connections:
            if a == node_id and b not in out:
                out.append(b)
            elif b == node_id and a not in out:
                out.append(a)
        return out


@dataclass
class ChatEntry:
    role: str
    content: str
    created_at: float = field(default_factory=now_ts)


@dataclass
class ActionLogEntry:
    kind: str
    text: str
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=now_ts)


@dataclass
class ToolCallRecord:
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    success: bool = False
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_type: Optional[str] = None
    state_delta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def to_dict(obj: Any) -> Dict[str, Any]:
    """Serialize a model dataclass to plain JSON-compatible data."""
    data = asdict(obj)
    return _plain(data)


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value
