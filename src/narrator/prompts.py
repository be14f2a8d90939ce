# Prompt assembly for the narrator: system prompt templates, per-turn context
# injection, battle-mode instruction and hallucination remediation messages.
from __future__ import annotations
from typing import Any, Dict, List, Optional, Sequence

from narrator.decoder import MOODS
from narrator.guard import ConsistencyFinding

# --- System prompt templates ---
DEFAULT_PROMPT_HEADER = (
    "你是《混沌传说》的游戏主持人（Game Master），以第二人称为玩家讲述一个文字冒险。\n"
    "世界状态（HP/MP、背包、金币、任务、战斗）只能通过工具修改；你的叙述必须与工具结果一致。\n"
)

DEFAULT_PROMPT_RULES = (
    "硬规则：\n"
    "- 任何涉及状态变化的描写（付钱、获得物品、装备、喝药、造成伤害、恢复、升级、接任务）都必须先调用对应工具，并以工具结果为准。\n"
    "- 工具失败时，如实叙述失败原因，不要假装成功。\n"
    "- 不要编造数值；伤害、奖励、掉落以工具返回为准。\n"
    "- 战斗中每个玩家行动对应一次 execute_battle_action（它会完整结算一个回合，包括敌人反击）。\n"
)

# Literal braces are doubled for str.format
DEFAULT_PROMPT_JSON_INSTRUCTIONS = (
    "输出要求（严格）：\n"
    "- 仅输出一个 JSON 对象，不要使用```json```包裹，不要有额外文字。\n"
    "- 结构：{{\"thought\": string, \"narrative\": string, \"mood\": string, \"suggestions\": [string], \"metadata\": object}}。\n"
    "- narrative：必填，中文叙述（可用 Markdown 强调）。\n"
    "- mood：取自 {moods}。\n"
    "- suggestions：2-4 条简短的下一步行动建议。\n"
    "- metadata：可选，如 {{\"bgm\": string, \"scenePrompt\": string}}。\n"
    "- 若无法使用原生工具调用，可在 actions 字段列出要执行的工具：[{{\"tool\": string, \"args\": object}}]。\n"
)

DEFAULT_PROMPT_JSON_EXAMPLE = (
    "输出示例（仅供参考，不要照抄）：\n"
    '{{"thought": "玩家想买药", "narrative": "掌柜把一瓶红色药水推到你面前。", "mood": "calm", '
    '"suggestions": ["离开药铺", "询问附近的传闻"], "metadata": {{"bgm": "town"}}}}'
)

DEFAULT_SYSTEM_TEMPLATE = (
    DEFAULT_PROMPT_HEADER
    + DEFAULT_PROMPT_RULES
    + DEFAULT_PROMPT_JSON_INSTRUCTIONS
    + DEFAULT_PROMPT_JSON_EXAMPLE
)

BATTLE_MODE_LINE = "当前处于战斗模式：只根据战斗工具的结果叙述，回合结束后给出下一步战斗建议。"
BATTLE_USER_SUFFIX = "\n\n(系统强指令：立即调用 execute_battle_action 工具，严禁在工具调用前输出任何剧情文本)"
GM_MODE_LINE = "GM 模式：玩家以 /gm 开头的指令拥有管理员权限，可使用全部工具（包括直接修改数据）。"

# Context injection
CTX_TITLE = "当前状态（系统注入，仅你可见）："
CTX_PLAYER = "- 玩家：{name} Lv.{level}  HP {hp}/{maxHp}  MP {mp}/{maxMp}  攻击 {attack}  防御 {defense}  速度 {speed}  金币 {gold}  灵石 {spiritStones}"
CTX_LOCATION = "- 位置：{areaName}/{nodeName}"
CTX_SKILLS = "- 技能：{skills}"
CTX_INVENTORY = "- 背包：{items}"
CTX_QUESTS = "- 进行中的任务：{quests}"
CTX_BATTLE = "- 战斗（第 {round} 回合）：{enemies}"
CTX_NONE = "无"

REMEDIATION_TEMPLATE = (
    "[SYSTEM ERROR] 你的叙述描写了状态变化，但没有调用必要的工具。\n"
    "原因：{reason}\n"
    "需要的工具：{tools}\n"
    "立即调用缺失的工具；不要重复之前的叙述，工具执行后再给出与结果一致的 JSON 回复。"
)


def build_system_prompt(*, in_battle: bool = False, gm: bool = False, template: Optional[str] = None) -> str:
    text = (template or DEFAULT_SYSTEM_TEMPLATE).format(moods="/".join(MOODS))
    extra: List[str] = []
    if in_battle:
        extra.append(BATTLE_MODE_LINE)
    if gm:
        extra.append(GM_MODE_LINE)
    return text + ("\n" + "\n".join(extra) if extra else "")


def _names(items: Sequence[Dict[str, Any]], fmt: str, limit: int = 12) -> str:
    out = [fmt.format(**x) for x in list(items)[:limit]]
    if len(items) > limit:
        out.append(f"…共 {len(items)} 项")
    return "、".join(out) if out else CTX_NONE


def build_context_injection(player_view: Dict[str, Any], battle_view: Optional[Dict[str, Any]] = None) -> str:
    """Render the authoritative state summary appended to the system prompt."""
    lines = [CTX_TITLE, CTX_PLAYER.format(**player_view)]
    loc = player_view.get("location") or {}
    lines.append(CTX_LOCATION.format(areaName=loc.get("areaName") or "-", nodeName=loc.get("nodeName") or "-"))
    lines.append(CTX_SKILLS.format(skills=_names(player_view.get("skills") or [], "{name}[{id}] MP{mpCost}")))
    lines.append(CTX_INVENTORY.format(items=_names(player_view.get("inventory") or [], "{name}×{quantity}[{id}]", limit=20)))
    quests = []
    for q in player_view.get("quests") or []:
        done = sum(1 for o in q.get("objectives") or [] if o.get("completed"))
        quests.append({"name": q.get("name"), "questId": q.get("questId"), "done": done, "total": len(q.get("objectives") or [])})
    lines.append(CTX_QUESTS.format(quests=_names(quests, "{name}[{questId}] {done}/{total}")))
    if battle_view and battle_view.get("inBattle"):
        alive = [e for e in battle_view.get("enemies") or [] if e.get("alive")]
        lines.append(CTX_BATTLE.format(
            round=battle_view.get("round", 1),
            enemies=_names(alive, "[{index}] {name} HP {hp}/{maxHp}"),
        ))
    return "\n".join(lines)


def battle_user_message(message: str) -> str:
    return message + BATTLE_USER_SUFFIX


def remediation_message(finding: ConsistencyFinding) -> str:
    return REMEDIATION_TEMPLATE.format(
        reason=finding.reason or "",
        tools=", ".join(finding.missing_tools) or "-",
    )
