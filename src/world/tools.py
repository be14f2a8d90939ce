# Tool dispatch and execution: every state mutation of the game goes through
# ToolDispatcher.execute (normalize -> validate -> battle precondition -> call).
from __future__ import annotations
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
import copy
import logging
import math
import random
import re

from agentscope.message import TextBlock
from agentscope.tool import ToolResponse
from pydantic import ValidationError as ArgumentError

from world.battle import (
    BattleRules,
    PlayerAction,
    apply_exp,
    check_phases,
    enemies_brief,
    flee,
    resolve_round,
    settle_victory,
    start_battle,
)
from world.catalog import (
    BANNED_EFFECTS,
    ITEM_TYPES,
    MAX_ACTIVE_QUESTS,
    MAX_AREA_NODES,
    MAX_ENHANCE_LEVEL,
    MAX_ITEM_QUANTITY,
    MODIFIABLE_FIELDS,
    QUALITIES,
    QUEST_EXP_PER_LEVEL,
    QUEST_GOLD_PER_LEVEL,
    SELL_PRICE_BY_QUALITY,
    TOOL_SPECS,
    argument_problems,
)
from world.errors import (
    EngineError,
    NotFoundError,
    StateConflictError,
    StoreUnavailableError,
    ValidationError,
)
from world.models import (
    EQUIPMENT_TYPES,
    Area,
    AreaNode,
    BattleState,
    BattleStatus,
    EnemyTemplate,
    InventoryItem,
    Player,
    PlayerQuest,
    Quest,
    QuestObjective,
    Skill,
    ToolCallRecord,
    base_stats_for_level,
    exp_to_next_level,
)
from world.store import GameStore

LOGGER = logging.getLogger("chaos_saga.tools")

# item stat key -> Player attribute, applied while the item is equipped
EQUIP_STAT_FIELDS = {
    "attack": "attack",
    "defense": "defense",
    "speed": "speed",
    "maxHp": "max_hp",
    "maxMp": "max_mp",
}
ENHANCE_RATE = 0.10


@dataclass
class ToolResult:
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_type: Optional[str] = None
    state_delta: Dict[str, Any] = field(default_factory=dict)
    text: str = ""

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success, "data": self.data, "text": self.text}
        if not self.success:
            out["error"] = self.error
            out["errorType"] = self.error_type
        if self.state_delta:
            out["stateDelta"] = self.state_delta
        return out

    def to_record(self, name: str, args: Dict[str, Any]) -> ToolCallRecord:
        return ToolCallRecord(
            name=name,
            args=dict(args or {}),
            success=self.success,
            data=dict(self.data),
            error=self.error,
            error_type=self.error_type,
            state_delta=dict(self.state_delta),
        )


def _reply(text: str, data: Optional[Dict[str, Any]] = None, delta: Optional[Dict[str, Any]] = None) -> ToolResponse:
    return ToolResponse(
        content=[TextBlock(type="text", text=text)],
        metadata={"ok": True, "data": dict(data or {}), "state_delta": dict(delta or {})},
    )


def _failure(text: str, error_type: str, **meta: Any) -> ToolResponse:
    return ToolResponse(
        content=[TextBlock(type="text", text=text)],
        metadata={"ok": False, "error_type": error_type, "error": text, **meta},
    )


def _response_text(resp: Any) -> str:
    lines: List[str] = []
    for blk in getattr(resp, "content", None) or []:
        if isinstance(blk, dict):
            lines.append(str(blk.get("text", "")))
        elif hasattr(blk, "text"):
            lines.append(str(getattr(blk, "text", "")))
    return "\n".join(x for x in lines if x)


def _to_result(resp: ToolResponse) -> ToolResult:
    meta = dict(getattr(resp, "metadata", None) or {})
    text = _response_text(resp)
    ok = bool(meta.get("ok"))
    return ToolResult(
        success=ok,
        data=dict(meta.get("data") or {}),
        error=None if ok else str(meta.get("error") or text),
        error_type=None if ok else str(meta.get("error_type") or "error"),
        state_delta=dict(meta.get("state_delta") or {}) if ok else {},
        text=text,
    )


# ---- parameter normalization ----

def _camel(key: str) -> str:
    return re.sub(r"_([a-z])", lambda m: m.group(1).upper(), str(key))


def _camel_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {_camel(k): _camel_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_camel_keys(v) for v in value]
    return value


def _snake(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", str(key)).lower()


_BATTLE_ACTION_KEYS = ("type", "skillId", "itemId", "targetIndex")


def _normalize_params(tool: str, params: Dict[str, Any]) -> Dict[str, Any]:
    p = _camel_keys(dict(params or {}))
    if tool == "execute_battle_action":
        act = p.get("action")
        if isinstance(act, str):
            act = {"type": act}
        act = dict(act) if isinstance(act, dict) else {}
        for k in _BATTLE_ACTION_KEYS:
            if k in p and k not in act:
                act[k] = p.pop(k)
        if "target" in act and "targetIndex" not in act:
            act["targetIndex"] = act.pop("target")
        # a lone skillId/itemId names the action implicitly
        if not act.get("type"):
            if act.get("skillId"):
                act["type"] = "skill"
            elif act.get("itemId"):
                act["type"] = "item"
        if act:
            p["action"] = act
    elif tool == "modify_player_data":
        mods = p.get("modifications")
        if isinstance(mods, dict):
            mods = [mods]
        if isinstance(mods, list):
            p["modifications"] = [
                dict(m, field=_camel(m["field"])) if isinstance(m, dict) and isinstance(m.get("field"), str) else m
                for m in mods
            ]
    elif tool == "add_item" and isinstance(p.get("items"), dict):
        p["items"] = [p["items"]]
    # an explicit null is the same as leaving the argument out
    return {k: v for k, v in p.items() if v is not None}


# ---- small helpers ----

def _find_unique(entries: Iterable[Dict[str, Any]], ref: Any) -> Optional[Dict[str, Any]]:
    key = str(ref or "").strip()
    if not key:
        return None
    items = list(entries)
    for e in items:
        if str(e.get("id", "")) == key:
            return e
    for e in items:
        if str(e.get("name", "")) == key:
            return e
    partial = [e for e in items if key in str(e.get("name", ""))]
    return partial[0] if len(partial) == 1 else None


def _player_delta(player: Player, *, inventory: bool = False, quests: bool = False, location: bool = False) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "player": {
            **player.stats_brief(),
            "exp": player.exp,
            "gold": player.gold,
            "spiritStones": player.spirit_stones,
        }
    }
    if inventory:
        out["inventory"] = [it.brief() for it in player.inventory]
    if quests:
        out["quests"] = [asdict(q) for q in player.quests]
    if location:
        out["location"] = {"areaId": player.current_area_id, "nodeId": player.current_node_id}
    return out


def _check_quantity(qty: Any, param: str = "quantity") -> int:
    try:
        n = int(qty)
    except (TypeError, ValueError):
        raise ValidationError(f"数量必须为整数: {qty!r}", param=param)
    if n < 1 or n > MAX_ITEM_QUANTITY:
        raise ValidationError(f"数量必须在 1-{MAX_ITEM_QUANTITY} 之间", param=param)
    return n


def _banned_effect(text: Optional[str]) -> Optional[str]:
    low = str(text or "").lower()
    for token in BANNED_EFFECTS:
        if token.lower() in low:
            return token
    return None


def build_item(spec: Dict[str, Any], *, param: str = "items") -> InventoryItem:
    """Validate one item description and turn it into an InventoryItem (not yet owned)."""
    name = str(spec.get("name") or "").strip()
    if not name:
        raise ValidationError("物品缺少名称", param=f"{param}.name")
    kind = str(spec.get("type") or "")
    if kind not in ITEM_TYPES:
        raise ValidationError(f"不支持的物品类型: {kind}", param=f"{param}.type")
    quality = str(spec.get("quality") or "common")
    if quality not in QUALITIES:
        raise ValidationError(f"不支持的品质: {quality}", param=f"{param}.quality")
    qty = _check_quantity(spec.get("quantity", 1), f"{param}.quantity")
    effect = spec.get("specialEffect")
    banned = _banned_effect(effect) or _banned_effect(name)
    if banned:
        raise ValidationError(f"禁止的特殊效果: {banned}", param=f"{param}.specialEffect")
    stats = dict(spec.get("stats") or {})
    sk = spec.get("skill")
    skill = None
    if kind == "skill":
        if not isinstance(sk, dict):
            raise ValidationError(f"技能书 {name} 缺少技能数据", param=f"{param}.skill")
        skill = Skill.from_dict(dict(sk, name=sk.get("name") or name))
        if _banned_effect(skill.effect) or _banned_effect(skill.description):
            raise ValidationError(f"禁止的技能效果: {skill.effect}", param=f"{param}.skill")
    return InventoryItem(
        name=name,
        type=kind,
        quality=quality,
        quantity=qty,
        stats=stats,
        special_effect=str(effect) if effect else None,
        skill=skill,
    )


class ToolDispatcher:
    """Validates and applies catalog tools against the store for one actor."""

    def __init__(self, store: GameStore, rules: Optional[BattleRules] = None, rng: Optional[random.Random] = None) -> None:
        self.store = store
        self.rules = rules or BattleRules()
        self.rng = rng or random.Random()

    # ---- entry point ----
    def execute(
        self,
        name: str,
        args: Optional[Dict[str, Any]],
        actor_id: str,
        *,
        allowed: Optional[Set[str]] = None,
    ) -> ToolResult:
        spec = TOOL_SPECS.get(name)
        if spec is None:
            return _to_result(_failure(f"未知工具: {name}", "unknown_tool"))
        if allowed is not None and name not in allowed:
            return _to_result(_failure(f"当前模式下不可使用工具: {name}", "not_allowed"))

        # 1) normalize; 2) argument model (coercion, unknown keys dropped)
        try:
            params = spec.parse(_normalize_params(name, args or {}))
        except ArgumentError as exc:
            errs = argument_problems(exc)
            LOGGER.info("tool %s rejected: %s", name, "; ".join(errs))
            return _to_result(_failure("参数错误：" + "；".join(errs), "validation", problems=errs))

        try:
            # 3) battle precondition
            if spec.requires_battle or spec.forbids_battle:
                battle = self.store.get_battle(actor_id)
                in_battle = battle is not None and battle.active
                if spec.requires_battle and not in_battle:
                    raise StateConflictError("当前没有进行中的战斗")
                if spec.forbids_battle and in_battle:
                    raise StateConflictError(f"战斗中无法执行 {name}")
            # 4) call
            fn = getattr(self, f"_tool_{name}")
            resp = fn(actor_id, **{_snake(k): v for k, v in params.items()})
        except StoreUnavailableError:
            raise
        except EngineError as exc:
            LOGGER.info("tool %s failed (%s): %s", name, exc.error_type, exc.message)
            meta = exc.to_metadata()
            meta.pop("ok", None)
            meta.pop("error", None)
            error_type = meta.pop("error_type")
            return _to_result(_failure(exc.message, error_type, **meta))
        except TypeError as exc:
            return _to_result(_failure(str(exc), "invalid_parameters"))
        except Exception as exc:
            LOGGER.exception("tool %s crashed", name)
            return _to_result(_failure(str(exc), exc.__class__.__name__))

        result = _to_result(resp)
        if result.success and spec.mutating and name != "send_narrative":
            self.store.append_log(actor_id, "tool", result.text, {"tool": name, "args": params})
        LOGGER.debug("tool %s ok=%s", name, result.success)
        return result

    # ---- views ----
    def describe_player(self, player: Player) -> Dict[str, Any]:
        area: Optional[Area] = None
        if player.current_area_id:
            try:
                area = self.store.get_area(player.current_area_id)
            except NotFoundError:
                area = None
        node = area.node(player.current_node_id) if area else None
        quests: List[Dict[str, Any]] = []
        for rec in player.active_quests():
            try:
                q = self.store.get_quest(rec.quest_id)
            except NotFoundError:
                continue
            quests.append({
                "questId": q.id,
                "name": q.name,
                "objectives": [
                    {
                        "description": o.description,
                        "current": int((rec.progress[i] if i < len(rec.progress) else {}).get("current_count", 0)),
                        "target": o.target_count,
                        "completed": bool((rec.progress[i] if i < len(rec.progress) else {}).get("completed")),
                    }
                    for i, o in enumerate(q.objectives)
                ],
            })
        battle = self.store.get_battle(player.id)
        return {
            **player.stats_brief(),
            "id": player.id,
            "exp": player.exp,
            "expToNext": exp_to_next_level(player.level),
            "gold": player.gold,
            "spiritStones": player.spirit_stones,
            "location": {
                "areaId": player.current_area_id,
                "areaName": area.name if area else "",
                "nodeId": player.current_node_id,
                "nodeName": node.name if node else "",
            },
            "skills": [
                {"id": s.id, "name": s.name, "mpCost": s.mp_cost, "cooldown": s.cooldown, "effect": s.effect}
                for s in player.equipped_skills()
            ],
            "inventory": [it.brief() for it in player.inventory],
            "quests": quests,
            "statuses": list(player.statuses),
            "inBattle": bool(battle and battle.active),
        }

    def describe_battle(self, player: Player) -> Optional[Dict[str, Any]]:
        """Active battle snapshot for the player, or None."""
        battle = self.store.get_battle(player.id)
        if battle is None or not battle.active:
            return None
        return self._battle_view(battle, player)

    def _battle_view(self, battle: BattleState, player: Player) -> Dict[str, Any]:
        return {
            "inBattle": battle.active,
            "battleId": battle.id,
            "round": battle.round_number,
            "status": battle.status.value,
            "enemies": enemies_brief(battle),
            "player": player.stats_brief(),
            "cooldowns": dict(battle.player_cooldowns),
            "log": battle.log[-6:],
        }

    # ---- queries ----
    def _tool_get_player_state(self, actor_id: str) -> ToolResponse:
        player = self.store.get_player(actor_id)
        data = self.describe_player(player)
        loc = data["location"]
        text = (
            f"{player.name} Lv.{player.level}  HP {player.hp}/{player.max_hp}  MP {player.mp}/{player.max_mp}  "
            f"金币 {player.gold}  灵石 {player.spirit_stones}  位置 {loc['areaName'] or '-'}/{loc['nodeName'] or '-'}"
        )
        return _reply(text, data)

    def _tool_get_area_info(self, actor_id: str, area_id: Optional[str] = None) -> ToolResponse:
        player = self.store.get_player(actor_id)
        area = self.store.get_area(area_id or player.current_area_id)
        here = area.id == player.current_area_id
        node = area.node(player.current_node_id) if here else None
        neighbors = []
        if node is not None:
            for nid in area.neighbors(node.id):
                n = area.node(nid)
                if n is not None:
                    neighbors.append({"id": n.id, "name": n.name, "type": n.type, "explored": n.id in player.explored_nodes})
        npcs = [{"id": str(x.get("id", "")), "name": str(x.get("name", "")), "role": str(x.get("role", ""))} for x in (node.npcs() if node else [])]
        data = {
            "area": {
                "id": area.id,
                "name": area.name,
                "description": area.description,
                "theme": area.theme,
                "recommendedLevel": area.recommended_level,
                "nodeCount": len(area.nodes),
            },
            "currentNode": {"id": node.id, "name": node.name, "type": node.type, "description": node.description} if node else None,
            "neighbors": neighbors,
            "explored": [n for n in player.explored_nodes if area.node(n) is not None],
            "npcs": npcs,
        }
        text = f"区域：{area.name}"
        if node is not None:
            text += f"，当前位置：{node.name}（{node.type}）"
        if neighbors:
            text += "，可前往：" + "、".join(n["name"] for n in neighbors)
        if npcs:
            text += "，此处NPC：" + "、".join(n["name"] for n in npcs)
        return _reply(text, data)

    def _tool_get_battle_state(self, actor_id: str) -> ToolResponse:
        battle = self.store.get_battle(actor_id)
        if battle is None or not battle.active:
            return _reply("当前不在战斗中", {"inBattle": False})
        player = self.store.get_player(actor_id)
        data = self._battle_view(battle, player)
        text = f"第 {battle.round_number} 回合；" + "；".join(
            f"[{e['index']}] {e['name']} HP {e['hp']}/{e['maxHp']}{'' if e['alive'] else '（已击败）'}" for e in data["enemies"]
        )
        return _reply(text, data)

    # ---- battle ----
    def _node_templates(self, player: Player) -> List[EnemyTemplate]:
        try:
            area = self.store.get_area(player.current_area_id)
        except NotFoundError:
            return []
        node = area.node(player.current_node_id)
        if node is None:
            return []
        raw = node.data.get("enemyTemplates") or node.data.get("enemies") or []
        if isinstance(node.data.get("boss"), dict):
            raw = [*raw, node.data["boss"]]
        return [EnemyTemplate.from_dict(t) for t in raw if isinstance(t, dict)]

    def _tool_start_battle(self, actor_id: str, enemies: Optional[List[Dict[str, Any]]] = None) -> ToolResponse:
        player = self.store.get_player(actor_id)
        if enemies:
            templates = [EnemyTemplate.from_dict(t) for t in enemies]
        else:
            templates = self._node_templates(player)
        if not templates:
            raise ValidationError("当前节点没有可战斗的敌人，请提供 enemies", param="enemies")
        battle = start_battle(
            player,
            templates,
            self.rng,
            battle_id=self.store.new_id("battle"),
            area_id=player.current_area_id,
            node_id=player.current_node_id,
        )
        self.store.save_battle(battle)
        LOGGER.info("battle %s started for %s: %d enemies", battle.id, actor_id, len(battle.enemies))
        data = self._battle_view(battle, player)
        return _reply(battle.log[-1], data, {"battle": {"status": battle.status.value, "enemies": data["enemies"], "round": 1}})

    def _advance_kill_quests(self, player: Player, battle: BattleState) -> List[Dict[str, Any]]:
        """Count defeated enemies against kill objectives of active quests."""
        defeated = [e for e in battle.enemies if not e.alive]
        updates: List[Dict[str, Any]] = []
        for rec in player.active_quests():
            try:
                quest = self.store.get_quest(rec.quest_id)
            except NotFoundError:
                continue
            for i, obj in enumerate(quest.objectives):
                if quest.type != "kill" and obj.target_type not in ("kill", "enemy"):
                    continue
                if not obj.target_id:
                    continue
                n = sum(1 for e in defeated if obj.target_id in (e.template, e.name) or obj.target_id in e.name)
                if not n:
                    continue
                while len(rec.progress) <= i:
                    rec.progress.append({"current_count": 0, "completed": False})
                prog = rec.progress[i]
                if prog.get("completed"):
                    continue
                prog["current_count"] = min(obj.target_count, int(prog.get("current_count", 0)) + n)
                prog["completed"] = prog["current_count"] >= obj.target_count
                updates.append({
                    "questId": quest.id,
                    "objectiveIndex": i,
                    "currentCount": prog["current_count"],
                    "completed": prog["completed"],
                })
        return updates

    def _close_battle(self, player: Player, battle: BattleState, data: Dict[str, Any]) -> None:
        if battle.status is BattleStatus.WON:
            updates = self._advance_kill_quests(player, battle)
            if updates:
                data["questUpdates"] = updates
        self.store.save_player(player)
        self.store.delete_battle(player.id)
        LOGGER.info("battle %s ended: %s", battle.id, battle.status.value)

    def _tool_execute_battle_action(self, actor_id: str, action: Dict[str, Any]) -> ToolResponse:
        battle = self.store.get_battle(actor_id)
        if battle is None:
            raise StateConflictError("当前没有进行中的战斗")
        player = self.store.get_player(actor_id)
        act = PlayerAction(
            type=str(action.get("type")),
            skill_id=action.get("skillId"),
            item_id=action.get("itemId"),
            target_index=int(action.get("targetIndex", 0) or 0),
        )
        outcome = resolve_round(battle, player, act, self.rules, self.rng)
        data = outcome.to_data()
        data["enemies"] = enemies_brief(battle)
        data["player"] = player.stats_brief()
        delta = _player_delta(player, inventory=bool(outcome.consumed_item or outcome.rewards))
        delta["battle"] = {"status": battle.status.value, "round": battle.round_number, "enemies": data["enemies"]}
        if battle.active:
            self.store.save_player(player)
            self.store.save_battle(battle)
        else:
            self._close_battle(player, battle, data)
            if "questUpdates" in data:
                delta["quests"] = [asdict(q) for q in player.quests]
        return _reply("\n".join(outcome.log), data, delta)

    def _tool_modify_enemy_hp(
        self,
        actor_id: str,
        value: float,
        enemy_index: Optional[int] = None,
        enemy_name: Optional[str] = None,
        operation: str = "set",
        reason: str = "",
    ) -> ToolResponse:
        battle = self.store.get_battle(actor_id)
        if battle is None:
            raise StateConflictError("当前没有进行中的战斗")
        player = self.store.get_player(actor_id)
        if enemy_index is not None:
            if enemy_index >= len(battle.enemies):
                raise ValidationError(f"敌人索引越界: {enemy_index}", param="enemyIndex")
            enemy = battle.enemies[enemy_index]
        elif enemy_name:
            found = _find_unique(({"id": str(e.index), "name": e.name} for e in battle.enemies), enemy_name)
            if found is None:
                raise NotFoundError(f"敌人不存在: {enemy_name}", param="enemyName")
            enemy = battle.enemies[int(found["id"])]
        else:
            living = battle.living_enemies()
            if not living:
                raise StateConflictError("没有存活的敌人")
            enemy = living[0]
        if not enemy.alive:
            raise StateConflictError(f"{enemy.name} 已被击败，无法修改HP", param="enemyIndex")
        before = enemy.hp
        amount = int(value)
        if operation == "add":
            target = before + amount
        elif operation == "subtract":
            target = before - amount
        else:
            target = amount
        enemy.hp = max(0, min(enemy.max_hp, target))
        battle.log.append(f"【GM】{enemy.name} HP {before} → {enemy.hp}" + (f"（{reason}）" if reason else ""))
        data: Dict[str, Any] = {"enemy": enemy.name, "before": before, "after": enemy.hp}
        data["phaseEvents"] = check_phases(battle)
        if not battle.living_enemies():
            rewards, level_up = settle_victory(battle, player, self.rules, self.rng)
            data["rewards"] = rewards
            data["levelUp"] = level_up
        data["status"] = battle.status.value
        data["enemies"] = enemies_brief(battle)
        delta = {"battle": {"status": battle.status.value, "round": battle.round_number, "enemies": data["enemies"]}}
        if battle.active:
            self.store.save_battle(battle)
        else:
            self._close_battle(player, battle, data)
            delta.update(_player_delta(player, inventory=True))
        return _reply(battle.log[-1] if battle.active else "\n".join(battle.log[-2:]), data, delta)

    # ---- items ----
    def _equip_stats(self, player: Player, item: InventoryItem, sign: int) -> None:
        for key, attr in EQUIP_STAT_FIELDS.items():
            try:
                v = int(item.stats.get(key, 0) or 0)
            except (TypeError, ValueError):
                continue
            if v:
                setattr(player, attr, getattr(player, attr) + sign * v)
        player.max_hp = max(1, player.max_hp)
        player.max_mp = max(0, player.max_mp)
        player.hp = min(player.hp, player.max_hp)
        player.mp = min(player.mp, player.max_mp)

    def _tool_use_item(self, actor_id: str, item_id: str) -> ToolResponse:
        player = self.store.get_player(actor_id)
        item = player.find_item(item_id)
        if item is None:
            raise NotFoundError(f"物品不存在: {item_id}", param="itemId")
        data: Dict[str, Any] = {"item": item.name, "type": item.type}
        if item.type == "consumable":
            battle = self.store.get_battle(actor_id)
            if battle is not None and battle.active:
                raise StateConflictError("战斗中请通过 execute_battle_action 的 item 行动使用消耗品")
            hp = player.heal(int(item.stats.get("hpRestore", 0) or 0))
            mp = player.restore_mp(int(item.stats.get("mpRestore", 0) or 0))
            if item.stats.get("cure"):
                player.statuses = []
            player.remove_item(item, 1)
            data.update({"hpRestored": hp, "mpRestored": mp, "consumed": 1})
            text = f"使用了{item.name}，恢复 HP {hp}、MP {mp}"
        elif item.type in EQUIPMENT_TYPES:
            if item.equipped:
                self._equip_stats(player, item, -1)
                item.equipped = False
                data["equipped"] = False
                text = f"卸下了{item.name}"
            else:
                swapped = [it for it in player.inventory if it.equipped and it.type == item.type and it is not item]
                for other in swapped:
                    self._equip_stats(player, other, -1)
                    other.equipped = False
                self._equip_stats(player, item, 1)
                item.equipped = True
                data["equipped"] = True
                if swapped:
                    data["unequipped"] = [it.name for it in swapped]
                text = f"装备上了{item.name}" + (f"（替换 {swapped[0].name}）" if swapped else "")
        elif item.type == "skill":
            if item.skill is None:
                raise ValidationError(f"{item.name} 没有记载任何技能", param="itemId")
            if player.find_skill(item.skill.name) is not None:
                raise StateConflictError(f"已经学会了技能: {item.skill.name}")
            learned = copy.deepcopy(item.skill)
            learned.equipped = True
            player.skills.append(learned)
            player.remove_item(item, 1)
            data["learned"] = learned.name
            text = f"研读{item.name}，学会了技能「{learned.name}」"
        else:
            raise ValidationError(f"{item.name} 无法直接使用", param="itemId")
        self.store.save_player(player)
        return _reply(text, data, _player_delta(player, inventory=True))

    def _tool_add_item(self, actor_id: str, items: List[Dict[str, Any]]) -> ToolResponse:
        player = self.store.get_player(actor_id)
        if not items:
            raise ValidationError("items 不能为空", param="items")
        built = [build_item(spec, param=f"items[{i}]") for i, spec in enumerate(items)]
        added = self._give_items(player, built)
        self.store.save_player(player)
        text = "获得物品：" + "、".join(f"{x['name']}×{x['quantity']}" for x in added)
        return _reply(text, {"added": added}, _player_delta(player, inventory=True))

    def _give_items(self, player: Player, items: List[InventoryItem]) -> List[Dict[str, Any]]:
        added: List[Dict[str, Any]] = []
        for item in items:
            if item.type in EQUIPMENT_TYPES or item.type == "skill":
                # non-stackable: one entry per unit
                for _ in range(item.quantity):
                    unit = copy.deepcopy(item)
                    unit.quantity = 1
                    player.add_item(unit, item_id=self.store.new_id("item"))
            else:
                player.add_item(copy.deepcopy(item), item_id=self.store.new_id("item"))
            added.append({"name": item.name, "type": item.type, "quality": item.quality, "quantity": item.quantity})
        return added

    def _tool_enhance_equipment(self, actor_id: str, equipment_id: str) -> ToolResponse:
        player = self.store.get_player(actor_id)
        item = player.find_item(equipment_id)
        if item is None:
            raise NotFoundError(f"装备不存在: {equipment_id}", param="equipmentId")
        if item.type not in EQUIPMENT_TYPES:
            raise ValidationError(f"{item.name} 不是装备", param="equipmentId")
        level = int(item.stats.get("enhanceLevel", 0) or 0)
        if level >= MAX_ENHANCE_LEVEL:
            raise ValidationError(f"{item.name} 已强化至上限 +{MAX_ENHANCE_LEVEL}", param="equipmentId")
        cost = 50 * (level + 1)
        if player.gold < cost:
            raise ValidationError(f"金币不足（需要 {cost}，当前 {player.gold}）", param="equipmentId")
        increases: Dict[str, int] = {}
        for key in EQUIP_STAT_FIELDS:
            v = int(item.stats.get(key, 0) or 0)
            if v > 0:
                increases[key] = max(1, int(math.floor(v * ENHANCE_RATE)))
        player.gold -= cost
        if item.equipped:
            self._equip_stats(player, item, -1)
        for key, inc in increases.items():
            item.stats[key] = int(item.stats.get(key, 0)) + inc
        item.stats["enhanceLevel"] = level + 1
        if item.equipped:
            self._equip_stats(player, item, 1)
        self.store.save_player(player)
        text = f"{item.name} 强化至 +{level + 1}，花费 {cost} 金币"
        data = {"item": item.name, "enhanceLevel": level + 1, "goldSpent": cost, "increases": increases, "gold": player.gold}
        return _reply(text, data, _player_delta(player, inventory=True))

    # ---- movement / world ----
    def _tool_move_to_node(self, actor_id: str, node_id: str, force: bool = False) -> ToolResponse:
        player = self.store.get_player(actor_id)
        area = self.store.get_area(player.current_area_id)
        node = area.find_node(node_id)
        if node is None:
            raise NotFoundError(f"节点不存在: {node_id}", param="nodeId")
        if node.id == player.current_node_id:
            raise ValidationError(f"已经在 {node.name}", param="nodeId")
        if not force and node.id not in area.neighbors(player.current_node_id):
            raise ValidationError(f"{node.name} 与当前位置不相邻", param="nodeId")
        battle = self.store.get_battle(actor_id)
        escaped: List[str] = []
        if battle is not None and battle.active:
            escaped = flee(battle)
        first_visit = node.id not in player.explored_nodes
        player.current_node_id = node.id
        if first_visit:
            player.explored_nodes.append(node.id)
        self.store.save_player(player)
        if battle is not None:
            self.store.delete_battle(actor_id)
        data: Dict[str, Any] = {
            "node": {"id": node.id, "name": node.name, "type": node.type, "description": node.description},
            "firstVisit": first_visit,
            "neighbors": [n for n in area.neighbors(node.id)],
        }
        text = f"移动到了{node.name}"
        delta = _player_delta(player, location=True)
        if escaped:
            data["escapedFrom"] = escaped
            text = f"你脱离了与{'、'.join(escaped)}的战斗，" + text
            delta["battle"] = {"status": BattleStatus.FLED.value}
        return _reply(text, data, delta)

    def _tool_generate_area(
        self,
        actor_id: str,
        name: str,
        description: str,
        theme: str,
        recommended_level: int,
        nodes: List[Dict[str, Any]],
        connections: List[List[str]],
    ) -> ToolResponse:
        player = self.store.get_player(actor_id)
        if not nodes or len(nodes) > MAX_AREA_NODES:
            raise ValidationError(f"节点数量必须在 1-{MAX_AREA_NODES} 之间", param="nodes")
        ids = [str(n.get("id")) for n in nodes]
        if len(set(ids)) != len(ids):
            raise ValidationError("节点ID重复", param="nodes")
        for i, conn in enumerate(connections):
            if len(conn) < 2 or conn[0] not in ids or conn[1] not in ids:
                raise ValidationError(f"连接引用了未知节点: {conn}", param=f"connections[{i}]")
            if conn[0] == conn[1]:
                raise ValidationError(f"节点不能连接自身: {conn[0]}", param=f"connections[{i}]")
        area = Area(
            id=self.store.new_id("area"),
            name=name,
            description=description,
            theme=theme,
            recommended_level=max(1, int(recommended_level)),
            nodes=[AreaNode.from_dict(n) for n in nodes],
            connections=[[str(c[0]), str(c[1])] for c in connections],
        )
        self.store.save_area(area)
        entry = area.nodes[0]
        player.current_area_id = area.id
        player.current_node_id = entry.id
        if entry.id not in player.explored_nodes:
            player.explored_nodes.append(entry.id)
        self.store.save_player(player)
        LOGGER.info("area %s generated (%d nodes) for %s", area.id, len(area.nodes), actor_id)
        data = {
            "area": {"id": area.id, "name": area.name, "theme": area.theme, "recommendedLevel": area.recommended_level},
            "entry": {"id": entry.id, "name": entry.name, "type": entry.type},
            "nodes": [{"id": n.id, "name": n.name, "type": n.type} for n in area.nodes],
        }
        return _reply(f"新区域「{area.name}」已生成，你来到了{entry.name}", data, _player_delta(player, location=True))

    # ---- NPCs ----
    def _tool_interact_npc(self, actor_id: str, npc_id: str, action: str, data: Optional[Dict[str, Any]] = None) -> ToolResponse:
        player = self.store.get_player(actor_id)
        try:
            area = self.store.get_area(player.current_area_id)
        except NotFoundError:
            area = None
        node = area.node(player.current_node_id) if area else None
        npc = _find_unique(node.npcs(), npc_id) if node else None
        if npc is None:
            raise NotFoundError(f"此处没有这位NPC: {npc_id}", param="npcId")
        handler = getattr(self, f"_npc_{action}")
        return handler(player, node, npc, dict(data or {}))

    def _npc_talk(self, player: Player, node: AreaNode, npc: Dict[str, Any], data: Dict[str, Any]) -> ToolResponse:
        name = str(npc.get("name", ""))
        shop = [
            {"name": str(s.get("name", "")), "price": int(s.get("price", 0) or 0), "type": str(s.get("type", ""))}
            for s in (npc.get("shop") or []) if isinstance(s, dict)
        ]
        quests = []
        for ref in npc.get("quests") or []:
            q = self.store.find_quest(str(ref))
            if q is not None:
                quests.append({"questId": q.id, "name": q.name, "type": q.type})
        out = {"npc": {"id": str(npc.get("id", "")), "name": name, "role": str(npc.get("role", ""))}, "shop": shop, "quests": quests}
        line = str(npc.get("dialogue") or npc.get("greeting") or f"{name}打量着你。")
        return _reply(f"{name}：{line}", out)

    def _shop_entry(self, node: AreaNode, npc: Dict[str, Any], ref: Any) -> Dict[str, Any]:
        stock = [s for s in (npc.get("shop") or node.data.get("shop") or []) if isinstance(s, dict)]
        if not stock:
            raise StateConflictError(f"{npc.get('name')} 不出售任何物品")
        entry = _find_unique(stock, ref)
        if entry is None:
            raise NotFoundError(f"{npc.get('name')} 没有出售: {ref}", param="data.itemName")
        return entry

    def _npc_buy(self, player: Player, node: AreaNode, npc: Dict[str, Any], data: Dict[str, Any]) -> ToolResponse:
        ref = data.get("itemName") or data.get("itemId") or data.get("name")
        if not ref:
            raise ValidationError("缺少参数：data.itemName", param="data.itemName")
        qty = _check_quantity(data.get("quantity", 1), "data.quantity")
        entry = self._shop_entry(node, npc, ref)
        price = int(entry.get("price", 0) or 0)
        if price <= 0:
            price = SELL_PRICE_BY_QUALITY.get(str(entry.get("quality") or "common"), 12) * 2
        cost = price * qty
        if player.gold < cost:
            raise ValidationError(f"金币不足（需要 {cost}，当前 {player.gold}）", param="data.quantity")
        item = build_item(dict(entry, quantity=qty), param="data")
        player.gold -= cost
        added = self._give_items(player, [item])
        self.store.save_player(player)
        text = f"从{npc.get('name')}处购买了{item.name}×{qty}，花费 {cost} 金币"
        out = {"item": added[0], "quantity": qty, "goldSpent": cost, "gold": player.gold}
        return _reply(text, out, _player_delta(player, inventory=True))

    def _npc_sell(self, player: Player, node: AreaNode, npc: Dict[str, Any], data: Dict[str, Any]) -> ToolResponse:
        ref = data.get("itemId") or data.get("itemName")
        item = player.find_item(ref)
        if item is None:
            raise NotFoundError(f"物品不存在: {ref}", param="data.itemId")
        qty = _check_quantity(data.get("quantity", 1), "data.quantity")
        if qty > item.quantity:
            raise ValidationError(f"{item.name} 数量不足（持有 {item.quantity}）", param="data.quantity")
        if item.equipped:
            raise StateConflictError(f"请先卸下{item.name}")
        unit = SELL_PRICE_BY_QUALITY.get(item.quality, SELL_PRICE_BY_QUALITY["common"])
        earned = unit * qty
        player.remove_item(item, qty)
        player.gold += earned
        self.store.save_player(player)
        text = f"向{npc.get('name')}出售了{item.name}×{qty}，获得 {earned} 金币"
        out = {"item": item.name, "quantity": qty, "goldEarned": earned, "gold": player.gold}
        return _reply(text, out, _player_delta(player, inventory=True))

    def _npc_exchange(self, player: Player, node: AreaNode, npc: Dict[str, Any], data: Dict[str, Any]) -> ToolResponse:
        give = data.get("give") or []
        receive = data.get("receive") or []
        if not isinstance(give, list) or not isinstance(receive, list) or not (give or receive):
            raise ValidationError("exchange 需要 give/receive 列表", param="data")
        # every precondition first, then mutate
        taking: List[Tuple[InventoryItem, int]] = []
        for i, g in enumerate(give):
            if not isinstance(g, dict):
                raise ValidationError(f"give[{i}] 格式错误", param=f"data.give[{i}]")
            ref = g.get("itemId") or g.get("itemName") or g.get("name")
            item = player.find_item(ref)
            if item is None:
                raise NotFoundError(f"物品不存在: {ref}", param=f"data.give[{i}]")
            qty = _check_quantity(g.get("quantity", 1), f"data.give[{i}].quantity")
            already = sum(n for it, n in taking if it is item)
            if qty + already > item.quantity:
                raise ValidationError(f"{item.name} 数量不足（持有 {item.quantity}）", param=f"data.give[{i}].quantity")
            if item.equipped:
                raise StateConflictError(f"请先卸下{item.name}")
            taking.append((item, qty))
        incoming = [build_item(r, param=f"data.receive[{i}]") for i, r in enumerate(receive) if isinstance(r, dict)]
        for item, qty in taking:
            player.remove_item(item, qty)
        added = self._give_items(player, incoming)
        self.store.save_player(player)
        given = [{"name": it.name, "quantity": n} for it, n in taking]
        text = f"与{npc.get('name')}交换："
        text += "交出 " + ("、".join(f"{g['name']}×{g['quantity']}" for g in given) or "无")
        text += "，获得 " + ("、".join(f"{a['name']}×{a['quantity']}" for a in added) or "无")
        return _reply(text, {"given": given, "received": added}, _player_delta(player, inventory=True))

    def _npc_heal(self, player: Player, node: AreaNode, npc: Dict[str, Any], data: Dict[str, Any]) -> ToolResponse:
        cost = 5 * player.level
        if player.hp >= player.max_hp and player.mp >= player.max_mp:
            raise StateConflictError("你的状态已经是满的")
        if player.gold < cost:
            raise ValidationError(f"金币不足（需要 {cost}，当前 {player.gold}）", param="action")
        player.gold -= cost
        hp = player.heal(player.max_hp)
        mp = player.restore_mp(player.max_mp)
        self.store.save_player(player)
        text = f"{npc.get('name')}为你疗伤，花费 {cost} 金币，恢复 HP {hp}、MP {mp}"
        return _reply(text, {"goldSpent": cost, "hpRestored": hp, "mpRestored": mp, "gold": player.gold}, _player_delta(player))

    def _quest_for(self, data: Dict[str, Any]) -> Quest:
        ref = data.get("questId") or data.get("questName") or data.get("name")
        if not ref:
            raise ValidationError("缺少参数：data.questId", param="data.questId")
        quest = self.store.find_quest(str(ref))
        if quest is None:
            raise NotFoundError(f"任务不存在: {ref}", param="data.questId")
        return quest

    def _npc_accept_quest(self, player: Player, node: AreaNode, npc: Dict[str, Any], data: Dict[str, Any]) -> ToolResponse:
        quest = self._quest_for(data)
        rec = player.quest_record(quest.id)
        if rec is not None and rec.status == "active":
            raise StateConflictError(f"任务「{quest.name}」已在进行中")
        if rec is not None and rec.status == "completed":
            raise StateConflictError(f"任务「{quest.name}」已经完成")
        if len(player.active_quests()) >= MAX_ACTIVE_QUESTS:
            raise ValidationError(f"进行中的任务最多 {MAX_ACTIVE_QUESTS} 个", param="data.questId")
        fresh = PlayerQuest(
            quest_id=quest.id,
            progress=[{"current_count": 0, "completed": False} for _ in quest.objectives],
        )
        player.quests = [q for q in player.quests if q.quest_id != quest.id] + [fresh]
        self.store.save_player(player)
        text = f"接下了任务「{quest.name}」：{quest.description}"
        out = {"questId": quest.id, "name": quest.name, "objectives": [o.description for o in quest.objectives]}
        return _reply(text, out, _player_delta(player, quests=True))

    def _grant_quest_rewards(self, player: Player, quest: Quest, rec: PlayerQuest) -> Dict[str, Any]:
        if rec.rewarded:
            raise StateConflictError(f"任务「{quest.name}」的奖励已经领取")
        rewards = quest.rewards or {}
        items = [build_item(x, param="rewards.items") for x in (rewards.get("items") or []) if isinstance(x, dict)]
        gold = int(rewards.get("gold", 0) or 0)
        stones = int(rewards.get("spiritStones", rewards.get("spirit_stones", 0)) or 0)
        player.gold += gold
        player.spirit_stones += stones
        added = self._give_items(player, items)
        level_up = apply_exp(player, int(rewards.get("exp", 0) or 0), max_level=self.rules.max_level)
        rec.status = "completed"
        rec.rewarded = True
        for p in rec.progress:
            p["completed"] = True
        return {"exp": int(rewards.get("exp", 0) or 0), "gold": gold, "spiritStones": stones, "items": added, "levelUp": level_up}

    def _npc_submit_quest(self, player: Player, node: AreaNode, npc: Dict[str, Any], data: Dict[str, Any]) -> ToolResponse:
        quest = self._quest_for(data)
        rec = player.quest_record(quest.id)
        if rec is None or rec.status != "active":
            raise StateConflictError(f"任务「{quest.name}」不在进行中")
        if not rec.all_completed:
            raise ValidationError(f"任务「{quest.name}」的目标尚未全部完成", param="data.questId")
        granted = self._grant_quest_rewards(player, quest, rec)
        self.store.save_player(player)
        text = f"向{npc.get('name')}提交了任务「{quest.name}」，获得 {granted['exp']} 经验、{granted['gold']} 金币"
        return _reply(text, {"questId": quest.id, "rewards": granted}, _player_delta(player, inventory=True, quests=True))

    # ---- quests ----
    def _tool_create_quest(
        self,
        actor_id: str,
        name: str,
        description: str,
        type: str,
        objectives: List[Dict[str, Any]],
        rewards: Dict[str, Any],
        npc_id: Optional[str] = None,
        special_condition: Optional[str] = None,
    ) -> ToolResponse:
        player = self.store.get_player(actor_id)
        if not objectives:
            raise ValidationError("任务至少需要一个目标", param="objectives")
        for i, spec in enumerate(rewards.get("items") or []):
            build_item(spec, param=f"rewards.items[{i}]")
        max_exp = QUEST_EXP_PER_LEVEL * player.level
        max_gold = QUEST_GOLD_PER_LEVEL * player.level
        clamped: Dict[str, Dict[str, int]] = {}
        final = dict(rewards)
        for key, cap in (("exp", max_exp), ("gold", max_gold)):
            v = int(final.get(key, 0) or 0)
            if v > cap:
                clamped[key] = {"requested": v, "granted": cap}
                v = cap
            final[key] = v
        quest = Quest(
            id=self.store.new_id("quest"),
            name=name,
            description=description,
            type=type,
            npc_id=str(npc_id or ""),
            objectives=[QuestObjective.from_dict(o) for o in objectives],
            rewards=final,
            special_condition=special_condition,
        )
        self.store.save_quest(quest)
        LOGGER.info("quest %s created by narrator for %s", quest.id, actor_id)
        text = f"新任务「{quest.name}」已发布（奖励 {final['exp']} 经验、{final['gold']} 金币）"
        if clamped:
            text += "；奖励已按等级上限调整"
        data = {
            "questId": quest.id,
            "name": quest.name,
            "type": quest.type,
            "objectives": [o.description for o in quest.objectives],
            "rewards": final,
            "clamped": clamped,
        }
        return _reply(text, data)

    def _tool_update_quest(
        self,
        actor_id: str,
        quest_id: str,
        objective_index: Optional[int] = None,
        increment_count: int = 1,
        completed: Optional[bool] = None,
    ) -> ToolResponse:
        player = self.store.get_player(actor_id)
        quest = self.store.find_quest(quest_id)
        if quest is None:
            raise NotFoundError(f"任务不存在: {quest_id}", param="questId")
        rec = player.quest_record(quest.id)
        if rec is None or rec.status != "active":
            raise StateConflictError(f"任务「{quest.name}」不在进行中")
        if objective_index is None:
            if not completed:
                raise ValidationError("需要 objectiveIndex，或 completed=true 直接完成任务", param="objectiveIndex")
            granted = self._grant_quest_rewards(player, quest, rec)
            self.store.save_player(player)
            text = f"任务「{quest.name}」完成！获得 {granted['exp']} 经验、{granted['gold']} 金币"
            return _reply(text, {"questId": quest.id, "completed": True, "rewards": granted}, _player_delta(player, inventory=True, quests=True))
        if objective_index >= len(quest.objectives):
            raise ValidationError(f"目标索引越界: {objective_index}", param="objectiveIndex")
        obj = quest.objectives[objective_index]
        while len(rec.progress) < len(quest.objectives):
            rec.progress.append({"current_count": 0, "completed": False})
        prog = rec.progress[objective_index]
        if completed:
            prog["current_count"] = obj.target_count
        else:
            prog["current_count"] = min(obj.target_count, int(prog.get("current_count", 0)) + int(increment_count or 1))
        prog["completed"] = prog["current_count"] >= obj.target_count
        self.store.save_player(player)
        text = f"任务「{quest.name}」进度：{obj.description} {prog['current_count']}/{obj.target_count}"
        data = {
            "questId": quest.id,
            "objectiveIndex": objective_index,
            "currentCount": prog["current_count"],
            "targetCount": obj.target_count,
            "objectiveCompleted": prog["completed"],
            "readyToSubmit": rec.all_completed,
        }
        return _reply(text, data, _player_delta(player, quests=True))

    def _tool_abandon_quest(self, actor_id: str, quest_id: str) -> ToolResponse:
        player = self.store.get_player(actor_id)
        quest = self.store.find_quest(quest_id)
        if quest is None:
            raise NotFoundError(f"任务不存在: {quest_id}", param="questId")
        rec = player.quest_record(quest.id)
        if rec is None or rec.status != "active":
            raise StateConflictError(f"任务「{quest.name}」不在进行中")
        rec.status = "abandoned"
        self.store.save_player(player)
        return _reply(f"放弃了任务「{quest.name}」", {"questId": quest.id}, _player_delta(player, quests=True))

    # ---- direct modification ----
    def _tool_modify_player_data(self, actor_id: str, modifications: List[Dict[str, Any]], reason: str) -> ToolResponse:
        player = self.store.get_player(actor_id)
        if not modifications:
            raise ValidationError("modifications 不能为空", param="modifications")
        plan: List[Tuple[str, str, float]] = []
        for i, m in enumerate(modifications):
            wire = str(m.get("field"))
            op = str(m.get("operation") or "set")
            value = m.get("value")
            if wire not in MODIFIABLE_FIELDS:
                raise ValidationError(f"不允许修改的字段: {wire}", param=f"modifications[{i}].field")
            if not isinstance(value, (int, float)) or isinstance(value, bool) or not math.isfinite(value):
                raise ValidationError(f"数值无效: {value!r}", param=f"modifications[{i}].value")
            if wire == "level" and op == "multiply":
                raise ValidationError("等级不支持 multiply", param=f"modifications[{i}].operation")
            plan.append((wire, op, float(value)))

        changes: List[Dict[str, Any]] = []
        level_from = player.level
        for wire, op, value in plan:
            attr = MODIFIABLE_FIELDS[wire]
            before = int(getattr(player, attr))
            if op == "add":
                after = before + value
            elif op == "subtract":
                after = before - value
            elif op == "multiply":
                after = before * value
            else:
                after = value
            after = int(math.floor(after))
            if wire == "exp":
                player.exp = 0
                apply_exp(player, max(0, after), max_level=self.rules.max_level)
            elif wire == "level":
                self._set_level(player, max(1, min(self.rules.max_level, after)))
            else:
                setattr(player, attr, max(0, after))
            if wire in ("maxHp", "maxMp"):
                player.max_hp = max(1, player.max_hp)
            player.hp = min(player.hp, player.max_hp)
            player.mp = min(player.mp, player.max_mp)
            changes.append({"field": wire, "before": before, "after": int(getattr(player, attr))})
        self.store.save_player(player)
        text = "修改玩家数据：" + "，".join(f"{c['field']} {c['before']}→{c['after']}" for c in changes) + f"（{reason}）"
        data: Dict[str, Any] = {"changes": changes, "reason": reason}
        if player.level != level_from:
            data["levelUp"] = {"from": level_from, "to": player.level}
        return _reply(text, data, _player_delta(player))

    def _set_level(self, player: Player, level: int) -> None:
        old, new = base_stats_for_level(player.level), base_stats_for_level(level)
        for key in ("max_hp", "max_mp", "attack", "defense", "speed"):
            setattr(player, key, max(1 if key == "max_hp" else 0, getattr(player, key) + new[key] - old[key]))
        player.level = level
        player.hp = min(player.hp, player.max_hp)
        player.mp = min(player.mp, player.max_mp)

    def _tool_send_narrative(self, actor_id: str, text: str, kind: Optional[str] = None) -> ToolResponse:
        self.store.get_player(actor_id)
        self.store.append_log(actor_id, kind or "narrative", text)
        return _reply(text, {"logged": True, "kind": kind or "narrative"})
