# Turn-based battle resolution: enemy spawning, one full round per player action,
# phase unlocks, rewards/level-ups, defeat penalty and escape.
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
import math
import random

from world.errors import NotFoundError, StateConflictError, ValidationError
from world.models import (
    MAX_LEVEL,
    BattleState,
    BattleStatus,
    Drop,
    Enemy,
    EnemyTemplate,
    InventoryItem,
    Player,
    Skill,
    base_stats_for_level,
    exp_to_next_level,
)

PLAYER_ACTIONS = ("attack", "skill", "defend", "item", "flee")
# Below this HP fraction an enemy prefers a heal skill when one is available.
ENEMY_HEAL_BELOW = 0.3


@dataclass
class BattleRules:
    crit_chance: float = 0.05
    crit_multiplier: float = 2.0
    defeat_gold_fraction: float = 0.3
    rescue_fraction: float = 1.0
    max_level: int = MAX_LEVEL


@dataclass
class PlayerAction:
    type: str
    skill_id: Optional[str] = None
    item_id: Optional[str] = None
    target_index: int = 0


@dataclass
class RoundOutcome:
    round: int
    action: str
    status: BattleStatus
    log: List[str] = field(default_factory=list)
    damage_dealt: int = 0
    damage_taken: int = 0
    crits: int = 0
    defeated: List[str] = field(default_factory=list)
    phase_events: List[Dict[str, Any]] = field(default_factory=list)
    rewards: Optional[Dict[str, Any]] = None
    level_up: Optional[Dict[str, int]] = None
    penalty: Optional[Dict[str, int]] = None
    escaped_from: List[str] = field(default_factory=list)
    consumed_item: Optional[str] = None

    def to_data(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "round": self.round,
            "action": self.action,
            "status": self.status.value,
            "log": list(self.log),
            "damageDealt": self.damage_dealt,
            "damageTaken": self.damage_taken,
            "crits": self.crits,
            "defeated": list(self.defeated),
            "phaseEvents": list(self.phase_events),
        }
        if self.rewards is not None:
            out["rewards"] = self.rewards
        if self.level_up is not None:
            out["levelUp"] = self.level_up
        if self.penalty is not None:
            out["penalty"] = self.penalty
        if self.escaped_from:
            out["escapedFrom"] = list(self.escaped_from)
        if self.consumed_item:
            out["consumedItem"] = self.consumed_item
        return out


# ---- spawning ----

def enemy_from_template(tpl: EnemyTemplate, index: int, rng: random.Random, *, name: Optional[str] = None) -> Enemy:
    lv = max(1, int(tpl.level))
    hp = tpl.hp if tpl.hp is not None else 50 + lv * 20 + rng.randint(0, 10)
    mp = tpl.mp if tpl.mp is not None else 20 + lv * 5
    return Enemy(
        name=name or tpl.name,
        hp=hp,
        max_hp=hp,
        mp=mp,
        max_mp=mp,
        attack=tpl.attack if tpl.attack is not None else 5 + lv * 3,
        defense=tpl.defense if tpl.defense is not None else 3 + lv * 2,
        speed=tpl.speed if tpl.speed is not None else 5 + lv * 2,
        level=lv,
        element=tpl.element,
        skills=[Skill(**vars(s)) for s in tpl.skills],
        index=index,
        template=tpl.name,
        description=tpl.description,
        exp=tpl.exp if tpl.exp is not None else lv * 20,
        gold=tpl.gold if tpl.gold is not None else lv * 5,
        drops=list(tpl.drops),
        phases=sorted(tpl.phases, key=lambda p: -p.hp_threshold),
    )


def spawn_enemies(templates: Sequence[EnemyTemplate], rng: random.Random) -> List[Enemy]:
    enemies: List[Enemy] = []
    for tpl in templates:
        count = rng.randint(tpl.min_count, max(tpl.min_count, tpl.max_count))
        for i in range(count):
            label = f"{tpl.name} {chr(ord('A') + i)}" if count > 1 else tpl.name
            enemies.append(enemy_from_template(tpl, len(enemies), rng, name=label))
    return enemies


def start_battle(
    player: Player,
    templates: Sequence[EnemyTemplate],
    rng: random.Random,
    *,
    battle_id: str,
    area_id: str = "",
    node_id: str = "",
) -> BattleState:
    if not templates:
        raise ValidationError("没有可用的敌人模板", param="enemies")
    if not player.alive:
        raise StateConflictError("玩家已倒下，无法开战")
    enemies = spawn_enemies(templates, rng)
    battle = BattleState(
        id=battle_id,
        player_id=player.id,
        enemies=enemies,
        area_id=area_id,
        node_id=node_id,
    )
    battle.log.append("战斗开始：" + "、".join(f"{e.name}(Lv.{e.level})" for e in enemies))
    return battle


# ---- damage ----

def roll_damage(
    attack_power: float,
    multiplier: float,
    defense: float,
    rules: BattleRules,
    rng: random.Random,
) -> Tuple[int, bool]:
    """max(1, attack * multiplier - defense), multiplied on a critical hit."""
    dmg = max(1, int(math.floor(attack_power * multiplier - defense)))
    crit = rules.crit_chance > 0 and rng.random() < rules.crit_chance
    if crit:
        dmg = max(1, int(math.floor(dmg * rules.crit_multiplier)))
    return dmg, crit


# ---- enemy skill selection ----

def _phase_locked(enemy: Enemy) -> set:
    names = {n for p in enemy.phases for n in p.unlocked_skills}
    names.update(s.name for s in enemy.skills if s.unlocked_by_phase is not None)
    return names


def unlocked_skill_names(enemy: Enemy, fired: Sequence[float]) -> set:
    fired_set = set(fired)
    names = {n for p in enemy.phases if p.hp_threshold in fired_set for n in p.unlocked_skills}
    names.update(s.name for s in enemy.skills if s.unlocked_by_phase is not None and s.unlocked_by_phase in fired_set)
    return names


def available_enemy_skills(enemy: Enemy, fired: Sequence[float]) -> List[Skill]:
    locked = _phase_locked(enemy)
    unlocked = unlocked_skill_names(enemy, fired)
    out: List[Skill] = []
    for s in enemy.skills:
        if s.name in locked and s.name not in unlocked:
            continue
        if enemy.cooldowns.get(s.name, 0) > 0:
            continue
        if s.mp_cost > enemy.mp:
            continue
        out.append(s)
    return out


def choose_enemy_skill(enemy: Enemy, fired: Sequence[float]) -> Optional[Skill]:
    """Deterministic pick: heal when low, else the strongest attack skill, else None (basic attack)."""
    avail = available_enemy_skills(enemy, fired)
    if enemy.hp_fraction < ENEMY_HEAL_BELOW:
        for s in avail:
            if s.effect == "heal":
                return s
    attacks = [(i, s) for i, s in enumerate(avail) if s.effect in ("attack", "aoe")]
    if not attacks:
        return None
    attacks.sort(key=lambda t: (-t[1].priority, -t[1].damage, t[0]))
    return attacks[0][1]


# ---- progression ----

def apply_exp(player: Player, amount: int, *, max_level: int = MAX_LEVEL) -> Dict[str, int]:
    """Add exp and resolve every level boundary it crosses."""
    before = player.level
    player.exp = max(0, player.exp + int(amount))
    while player.level < max_level and player.exp >= exp_to_next_level(player.level):
        player.exp -= exp_to_next_level(player.level)
        old, new = base_stats_for_level(player.level), base_stats_for_level(player.level + 1)
        player.max_hp += new["max_hp"] - old["max_hp"]
        player.max_mp += new["max_mp"] - old["max_mp"]
        player.attack += new["attack"] - old["attack"]
        player.defense += new["defense"] - old["defense"]
        player.speed += new["speed"] - old["speed"]
        player.level += 1
    if player.level > before:
        player.hp = player.max_hp
        player.mp = player.max_mp
    return {"from": before, "to": player.level}


def roll_drops(drops: Sequence[Drop], rng: random.Random) -> List[Drop]:
    """Each drop entry is rolled independently against its own chance."""
    return [d for d in drops if rng.random() < float(d.chance)]


def collect_rewards(defeated: Sequence[Enemy], rng: random.Random) -> Dict[str, Any]:
    exp = sum(int(e.exp) for e in defeated)
    gold = sum(int(e.gold) for e in defeated)
    items: List[Dict[str, Any]] = []
    for e in defeated:
        for d in roll_drops(e.drops, rng):
            entry: Dict[str, Any] = {"name": d.name, "type": d.type, "quality": d.quality, "quantity": d.quantity, "from": e.name}
            if d.stats:
                entry["stats"] = dict(d.stats)
            if d.skill is not None:
                entry["skill"] = vars(d.skill).copy()
            items.append(entry)
    return {"exp": exp, "gold": gold, "items": items}


def apply_rewards(player: Player, rewards: Dict[str, Any], rules: BattleRules) -> Dict[str, int]:
    player.gold += int(rewards.get("gold", 0))
    for entry in rewards.get("items") or []:
        sk = entry.get("skill")
        item = InventoryItem(
            name=str(entry["name"]),
            type="skill" if sk else str(entry.get("type") or "material"),
            quality=str(entry.get("quality") or "common"),
            quantity=int(entry.get("quantity") or 1),
            stats=dict(entry.get("stats") or {}),
            skill=Skill(**sk) if sk else None,
        )
        player.add_item(item)
    return apply_exp(player, int(rewards.get("exp", 0)), max_level=rules.max_level)


def apply_defeat_penalty(player: Player, rules: BattleRules) -> Dict[str, int]:
    lost = int(math.floor(player.gold * rules.defeat_gold_fraction))
    player.gold -= lost
    player.hp = max(player.hp, int(math.ceil(player.max_hp * rules.rescue_fraction)), 1)
    player.mp = max(player.mp, int(math.ceil(player.max_mp * rules.rescue_fraction)))
    player.statuses = []
    return {"goldLost": lost, "hp": player.hp, "mp": player.mp}


# ---- state transitions ----

def _finish(battle: BattleState, status: BattleStatus) -> None:
    if not battle.active:
        raise StateConflictError(f"战斗已结束: {battle.status.value}")
    battle.status = status


def flee(battle: BattleState) -> List[str]:
    """End an active battle without rewards or penalty; returns enemy names escaped from."""
    names = [e.name for e in battle.living_enemies()]
    _finish(battle, BattleStatus.FLED)
    battle.log.append("你脱离了战斗。")
    return names


def settle_victory(
    battle: BattleState,
    player: Player,
    rules: BattleRules,
    rng: random.Random,
) -> Tuple[Dict[str, Any], Dict[str, int]]:
    """Active -> Won: aggregate every defeated enemy's rewards and apply them."""
    _finish(battle, BattleStatus.WON)
    rewards = collect_rewards([e for e in battle.enemies if not e.alive], rng)
    level_up = apply_rewards(player, rewards, rules)
    battle.rewards = rewards
    battle.log.append(f"战斗胜利！获得 {rewards['exp']} 经验、{rewards['gold']} 金币")
    if level_up["to"] > level_up["from"]:
        battle.log.append(f"等级提升：Lv.{level_up['from']} → Lv.{level_up['to']}")
    return rewards, level_up


def check_phases(battle: BattleState) -> List[Dict[str, Any]]:
    """Fire each not-yet-fired threshold an alive enemy's HP fraction has reached."""
    events: List[Dict[str, Any]] = []
    for enemy in battle.enemies:
        if not enemy.alive:
            continue
        fired = battle.triggered_phases.setdefault(enemy.index, [])
        for phase in sorted(enemy.phases, key=lambda p: -p.hp_threshold):
            if enemy.hp_fraction <= phase.hp_threshold and phase.hp_threshold not in fired:
                fired.append(phase.hp_threshold)
                events.append({
                    "enemy": enemy.name,
                    "enemyIndex": enemy.index,
                    "threshold": phase.hp_threshold,
                    "description": phase.description,
                    "unlocked": list(phase.unlocked_skills),
                })
                battle.log.append(f"【阶段变化】{enemy.name}：{phase.description or '进入新的阶段'}")
    return events


def _tick(cooldowns: Dict[str, int]) -> None:
    for k in list(cooldowns):
        cooldowns[k] -= 1
        if cooldowns[k] <= 0:
            del cooldowns[k]


def _validate_action(battle: BattleState, player: Player, action: PlayerAction) -> Tuple[Optional[Skill], Optional[InventoryItem]]:
    if action.type not in PLAYER_ACTIONS:
        raise ValidationError(f"未知的战斗行动: {action.type}", param="action.type")
    skill: Optional[Skill] = None
    item: Optional[InventoryItem] = None
    if action.type == "skill":
        if not action.skill_id:
            raise ValidationError("缺少参数：skillId", param="action.skillId")
        skill = player.find_skill(action.skill_id)
        if skill is None:
            raise NotFoundError(f"技能不存在: {action.skill_id}", param="action.skillId")
        if not skill.equipped:
            raise ValidationError(f"技能未装备: {skill.name}", param="action.skillId")
        left = battle.player_cooldowns.get(skill.id, 0)
        if left > 0:
            raise ValidationError(f"技能冷却中: {skill.name}（剩余 {left} 回合）", param="action.skillId")
        if player.mp < skill.mp_cost:
            raise ValidationError(f"MP 不足（需要 {skill.mp_cost}，当前 {player.mp}）", param="action.skillId")
    if action.type == "item":
        if not action.item_id:
            raise ValidationError("缺少参数：itemId", param="action.itemId")
        item = player.find_item(action.item_id)
        if item is None:
            raise NotFoundError(f"物品不存在: {action.item_id}", param="action.itemId")
        if item.type != "consumable":
            raise ValidationError(f"{item.name} 不是消耗品", param="action.itemId")
    needs_target = action.type == "attack" or (skill is not None and skill.effect not in ("heal", "aoe", "buff"))
    if needs_target:
        idx = int(action.target_index)
        if idx < 0 or idx >= len(battle.enemies):
            raise ValidationError(f"目标索引越界: {idx}", param="action.targetIndex")
        if not battle.enemies[idx].alive:
            raise ValidationError(f"目标已被击败: {battle.enemies[idx].name}", param="action.targetIndex")
    return skill, item


def _hit(battle: BattleState, target: Enemy, power: int, mult: float, rules: BattleRules, rng: random.Random, out: RoundOutcome, label: str) -> None:
    dmg, crit = roll_damage(power, mult, target.defense, rules, rng)
    dealt = target.take_damage(dmg)
    out.damage_dealt += dealt
    if crit:
        out.crits += 1
    battle.log.append(f"你{label}{target.name}，造成 {dealt} 点伤害{'（暴击）' if crit else ''}，剩余 HP {target.hp}/{target.max_hp}")
    if not target.alive:
        out.defeated.append(target.name)
        battle.log.append(f"{target.name} 被击败！")


def resolve_round(
    battle: BattleState,
    player: Player,
    action: PlayerAction,
    rules: BattleRules,
    rng: random.Random,
) -> RoundOutcome:
    """Resolve one full round in place. Validation happens before any mutation."""
    if not battle.active:
        raise StateConflictError(f"战斗已结束: {battle.status.value}")
    skill, item = _validate_action(battle, player, action)
    log_start = len(battle.log)
    out = RoundOutcome(round=battle.round_number, action=action.type, status=battle.status)

    if action.type == "flee":
        out.escaped_from = flee(battle)
        out.status = battle.status
        out.log = battle.log[log_start:]
        return out

    # 1) player action
    defending = False
    if action.type == "attack":
        _hit(battle, battle.enemies[action.target_index], player.attack, 1.0, rules, rng, out, "攻击")
    elif action.type == "skill" and skill is not None:
        player.mp -= skill.mp_cost
        if skill.cooldown > 0:
            battle.player_cooldowns[skill.id] = skill.cooldown
        if skill.effect == "heal":
            healed = player.heal(int(player.attack * skill.damage))
            battle.log.append(f"你施展{skill.name}，恢复 {healed} 点生命")
        elif skill.effect == "aoe":
            for target in battle.living_enemies():
                _hit(battle, target, player.attack, skill.damage, rules, rng, out, f"以{skill.name}攻击")
        elif skill.effect == "buff":
            battle.log.append(f"你施展{skill.name}")
        else:
            _hit(battle, battle.enemies[action.target_index], player.attack, skill.damage, rules, rng, out, f"以{skill.name}攻击")
    elif action.type == "defend":
        defending = True
        battle.log.append("你摆出防御姿态，本回合受到的伤害减半")
    elif action.type == "item" and item is not None:
        hp_gain = player.heal(int(item.stats.get("hpRestore", 0) or 0))
        mp_gain = player.restore_mp(int(item.stats.get("mpRestore", 0) or 0))
        if item.stats.get("cure"):
            player.statuses = []
        player.remove_item(item, 1)
        out.consumed_item = item.name
        battle.log.append(f"你使用了{item.name}，恢复 HP {hp_gain}、MP {mp_gain}")

    # 2-3) living enemies respond in list order
    for enemy in battle.enemies:
        if not enemy.alive:
            continue
        if not player.alive:
            break
        fired = battle.triggered_phases.get(enemy.index, [])
        chosen = choose_enemy_skill(enemy, fired)
        if chosen is not None:
            enemy.mp -= chosen.mp_cost
            if chosen.cooldown > 0:
                enemy.cooldowns[chosen.name] = chosen.cooldown
        if chosen is not None and chosen.effect == "heal":
            healed = enemy.heal(int(enemy.attack * chosen.damage))
            battle.log.append(f"{enemy.name} 施展{chosen.name}，恢复 {healed} 点生命")
            continue
        mult = chosen.damage if chosen is not None else 1.0
        dmg, crit = roll_damage(enemy.attack, mult, player.defense, rules, rng)
        if defending:
            dmg = max(1, dmg // 2)
        taken = player.take_damage(dmg)
        out.damage_taken += taken
        how = f"施展{chosen.name}" if chosen is not None else "发动攻击"
        battle.log.append(f"{enemy.name} {how}，对你造成 {taken} 点伤害{'（暴击）' if crit else ''}，你的 HP {player.hp}/{player.max_hp}")

    # 4) phase thresholds
    out.phase_events = check_phases(battle)

    _tick(battle.player_cooldowns)
    for enemy in battle.enemies:
        _tick(enemy.cooldowns)

    # 5) terminal conditions
    if not player.alive:
        _finish(battle, BattleStatus.LOST)
        out.penalty = apply_defeat_penalty(player, rules)
        battle.log.append(f"你被击败了……醒来时失去了 {out.penalty['goldLost']} 金币。")
    elif not battle.living_enemies():
        out.rewards, out.level_up = settle_victory(battle, player, rules, rng)
    else:
        battle.round_number += 1

    out.status = battle.status
    out.log = battle.log[log_start:]
    return out


def enemies_brief(battle: BattleState) -> List[Dict[str, Any]]:
    return [
        {
            "index": e.index,
            "name": e.name,
            "level": e.level,
            "element": e.element,
            "hp": e.hp,
            "maxHp": e.max_hp,
            "alive": e.alive,
        }
        for e in battle.enemies
    ]
