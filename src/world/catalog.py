# Declarative tool catalog: argument models (pydantic), battle/mutation flags, tool
# subsets offered per narration mode, and the numeric guardrails applied by the tools.
from __future__ import annotations
from dataclasses import dataclass
from functools import cached_property
from typing import Annotated, Any, Dict, List, Literal, Optional, Sequence, Type, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, FiniteFloat, StringConstraints, ValidationError
from pydantic.alias_generators import to_camel

# ---- guardrails ----
MAX_ACTIVE_QUESTS = 5
QUEST_EXP_PER_LEVEL = 30
QUEST_GOLD_PER_LEVEL = 50
MAX_ITEM_QUANTITY = 99
MAX_ENHANCE_LEVEL = 10
MAX_AREA_NODES = 12

ItemType = Literal[
    "weapon", "armor", "accessory", "helmet", "boots",
    "consumable", "material", "quest_item", "collectible", "skill",
]
Quality = Literal["common", "uncommon", "rare", "epic", "legendary"]
NpcAction = Literal["talk", "buy", "sell", "exchange", "heal", "accept_quest", "submit_quest"]
ModifiableField = Literal[
    "level", "hp", "mp", "maxHp", "maxMp", "attack", "defense", "speed", "gold", "spiritStones", "exp",
]

ITEM_TYPES = get_args(ItemType)
QUALITIES = get_args(Quality)
NPC_ACTIONS = get_args(NpcAction)
SELL_PRICE_BY_QUALITY = {"common": 12, "uncommon": 32, "rare": 60, "epic": 120, "legendary": 240}
BANNED_EFFECTS = (
    "instant_kill", "infinite_gold", "invincible", "immortal",
    "one_hit_kill", "unlimited_hp", "unlimited_mp", "god_mode",
    "infinite_damage", "kill_all", "全体秒杀", "无敌", "不死",
    "一击必杀", "无限金币", "无限生命",
)
MODIFIABLE_FIELDS = {
    # wire name -> Player attribute
    "level": "level",
    "hp": "hp",
    "mp": "mp",
    "maxHp": "max_hp",
    "maxMp": "max_mp",
    "attack": "attack",
    "defense": "defense",
    "speed": "speed",
    "gold": "gold",
    "spiritStones": "spirit_stones",
    "exp": "exp",
}

# required text: blank counts as missing
Name = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
Number = Union[int, FiniteFloat]
Count = Annotated[int, Field(ge=1)]
Amount = Annotated[int, Field(ge=0)]


class ToolArgs(BaseModel):
    """Base of every argument model: camelCase on the wire, undeclared keys dropped."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        coerce_numbers_to_str=True,
    )


class NoArgs(ToolArgs):
    pass


# ---- nested shapes ----

class ItemSpec(ToolArgs):
    name: Name
    type: ItemType
    quality: Optional[Quality] = None
    quantity: Annotated[int, Field(ge=1, le=MAX_ITEM_QUANTITY)] = 1
    stats: Optional[Dict[str, Any]] = Field(None, description="装备属性或恢复量（hpRestore/mpRestore）")
    special_effect: Optional[str] = Field(None, description="非标准特殊效果描述")
    skill: Optional[Dict[str, Any]] = Field(None, description="技能书记载的技能（type=skill 时）")


class EnemySpec(ToolArgs):
    name: Name
    level: Count
    element: Optional[str] = None
    min_count: Optional[Count] = None
    max_count: Optional[Count] = None
    description: Optional[str] = None
    exp: Optional[Amount] = None
    gold: Optional[Amount] = None
    hp: Optional[Count] = None
    attack: Optional[Amount] = None
    defense: Optional[Amount] = None
    speed: Optional[Amount] = None


class BattleAction(ToolArgs):
    type: Literal["attack", "skill", "defend", "item", "flee"]
    skill_id: Optional[str] = None
    item_id: Optional[str] = None
    target_index: Optional[Amount] = None


class NodeSpec(ToolArgs):
    id: Name
    name: Name
    type: Literal["safe", "battle", "npc", "boss", "event", "shop"]
    description: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class ObjectiveSpec(ToolArgs):
    description: Name
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    target_count: Optional[Count] = None


class RewardSpec(ToolArgs):
    exp: Optional[Amount] = None
    gold: Optional[Amount] = None
    spirit_stones: Optional[Amount] = None
    items: Optional[List[ItemSpec]] = None


class Modification(ToolArgs):
    field: ModifiableField
    value: Number
    operation: Literal["set", "add", "subtract", "multiply"] = "set"


# ---- tool arguments ----

class AreaInfoArgs(ToolArgs):
    area_id: Optional[str] = Field(None, description="区域ID，省略时为当前区域")


class StartBattleArgs(ToolArgs):
    enemies: Optional[List[EnemySpec]] = None


class BattleActionArgs(ToolArgs):
    action: BattleAction


class UseItemArgs(ToolArgs):
    item_id: Name = Field(description="物品ID或名称")


class MoveArgs(ToolArgs):
    node_id: Name = Field(description="节点ID或名称")
    force: bool = Field(False, description="忽略相邻限制（传送）")


class NpcArgs(ToolArgs):
    npc_id: Name = Field(description="NPC ID 或 名称")
    action: NpcAction
    data: Optional[Dict[str, Any]] = None


class EnhanceArgs(ToolArgs):
    equipment_id: Name


class GenerateAreaArgs(ToolArgs):
    name: Name
    description: Name
    theme: Name
    recommended_level: Count
    nodes: List[NodeSpec]
    connections: List[List[str]]


class CreateQuestArgs(ToolArgs):
    npc_id: Optional[str] = None
    name: Name
    description: Name
    type: Literal["fetch", "kill", "riddle", "escort", "explore"]
    objectives: List[ObjectiveSpec]
    rewards: RewardSpec
    special_condition: Optional[str] = None


class UpdateQuestArgs(ToolArgs):
    quest_id: Name
    objective_index: Optional[Amount] = None
    increment_count: Optional[Count] = None
    completed: Optional[bool] = None


class ModifyPlayerArgs(ToolArgs):
    modifications: List[Modification]
    reason: Name


class AddItemArgs(ToolArgs):
    items: List[ItemSpec]


class NarrativeArgs(ToolArgs):
    text: Name
    kind: Optional[str] = None


class EnemyHpArgs(ToolArgs):
    enemy_index: Optional[Amount] = None
    enemy_name: Optional[str] = None
    value: Number
    operation: Literal["set", "add", "subtract"] = "set"
    reason: Optional[str] = None


class QuestRefArgs(ToolArgs):
    quest_id: Name


@dataclass(frozen=True)
class ToolSpec:
    description: str
    args: Type[ToolArgs] = NoArgs
    requires_battle: bool = False
    forbids_battle: bool = False
    mutating: bool = True
    gm_only: bool = False

    @cached_property
    def parameters(self) -> Dict[str, Any]:
        schema = self.args.model_json_schema(by_alias=True)
        schema.pop("title", None)
        schema.pop("description", None)
        return schema

    def parse(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        """Validate raw arguments; returns wire-named values actually supplied.

        Raises pydantic.ValidationError.
        """
        return self.args.model_validate(raw).model_dump(by_alias=True, exclude_unset=True)

    def openai_schema(self, name: str) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {"name": name, "description": self.description, "parameters": self.parameters},
        }


def argument_problems(exc: ValidationError) -> List[str]:
    """Readable one-liners for a failed argument validation."""
    out: List[str] = []
    for err in exc.errors(include_url=False):
        loc = ".".join(str(p) for p in err.get("loc", ()))
        if err.get("type") in ("missing", "string_too_short"):
            out.append(f"缺少参数：{loc}")
        else:
            out.append(f"{loc or '参数'}：{err.get('msg')}")
    return out


TOOL_SPECS: Dict[str, ToolSpec] = {
    # ---- queries ----
    "get_player_state": ToolSpec(
        description="查询玩家当前状态：属性、等级、金币、位置、背包、技能与进行中的任务",
        mutating=False,
    ),
    "get_area_info": ToolSpec(
        description="查询区域信息：当前节点、相邻节点、已探索节点与此处的NPC",
        args=AreaInfoArgs,
        mutating=False,
    ),
    "get_battle_state": ToolSpec(
        description="查询当前战斗状态（敌人HP、回合数、冷却）",
        mutating=False,
    ),
    # ---- battle ----
    "start_battle": ToolSpec(
        description="开始战斗。省略 enemies 时使用当前节点配置的敌人",
        args=StartBattleArgs,
        forbids_battle=True,
    ),
    "execute_battle_action": ToolSpec(
        description="执行一个完整战斗回合：玩家行动 + 所有敌人反击 + 阶段检查 + 胜负结算",
        args=BattleActionArgs,
        requires_battle=True,
    ),
    # ---- actions ----
    "use_item": ToolSpec(
        description="使用背包物品：消耗品恢复HP/MP，装备切换穿戴，技能书学习技能",
        args=UseItemArgs,
    ),
    "move_to_node": ToolSpec(
        description="移动到相邻节点；战斗中移动视为逃跑",
        args=MoveArgs,
    ),
    "interact_npc": ToolSpec(
        description=(
            "与NPC交互。talk/buy/sell/exchange/heal/accept_quest/submit_quest。"
            "buy: data={itemName, quantity}; sell: data={itemId, quantity}; "
            "exchange: data={give:[{itemId, quantity}], receive:[物品]}; quest: data={questId}"
        ),
        args=NpcArgs,
    ),
    "enhance_equipment": ToolSpec(
        description="消耗金币强化一件装备（每级属性+10%，最高+10）",
        args=EnhanceArgs,
        forbids_battle=True,
    ),
    # ---- generation ----
    "generate_area": ToolSpec(
        description="生成一个新的冒险区域并将玩家传送至入口（第一个节点）",
        args=GenerateAreaArgs,
        forbids_battle=True,
    ),
    "create_quest": ToolSpec(
        description="由NPC发布一个新任务（采集/击杀/解谜/护送/探索）",
        args=CreateQuestArgs,
    ),
    "update_quest": ToolSpec(
        description="更新任务进度，或直接完成任务并发放奖励",
        args=UpdateQuestArgs,
    ),
    # ---- direct modification ----
    "modify_player_data": ToolSpec(
        description="直接修改玩家数据（GM模式与非标准效果）",
        args=ModifyPlayerArgs,
        gm_only=True,
    ),
    "add_item": ToolSpec(
        description="向玩家背包添加物品（奖励、拾取、任务奖励）",
        args=AddItemArgs,
    ),
    "send_narrative": ToolSpec(
        description="记录一段旁白到冒险日志",
        args=NarrativeArgs,
    ),
    "modify_enemy_hp": ToolSpec(
        description="GM指令：修改当前战斗中某个存活敌人的HP",
        args=EnemyHpArgs,
        requires_battle=True,
        gm_only=True,
    ),
    "abandon_quest": ToolSpec(
        description="GM指令：放弃一个进行中的任务",
        args=QuestRefArgs,
        gm_only=True,
    ),
}

BATTLE_TOOLS: List[str] = [
    "execute_battle_action",
    "use_item",
    "get_battle_state",
    "get_player_state",
    "add_item",
    "create_quest",
    "update_quest",
    "move_to_node",
    "send_narrative",
]
GM_TOOLS: List[str] = [n for n, s in TOOL_SPECS.items() if s.gm_only] + ["add_item", "generate_area"]
EXPLORATION_TOOLS: List[str] = [
    n for n in TOOL_SPECS if n != "execute_battle_action" and n not in GM_TOOLS
]


def tools_for_mode(*, in_battle: bool, gm: bool = False) -> List[str]:
    if gm:
        return list(TOOL_SPECS)
    return list(BATTLE_TOOLS if in_battle else EXPLORATION_TOOLS)


def openai_tool_schemas(names: Optional[Sequence[str]] = None) -> List[Dict[str, Any]]:
    selected = names if names is not None else list(TOOL_SPECS)
    return [TOOL_SPECS[n].openai_schema(n) for n in selected if n in TOOL_SPECS]
