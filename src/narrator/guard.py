# Consistency guard: flags narrative claims of state changes (currency paid,
# items stored, damage dealt, ...) that no successful tool call this turn backs.
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence
import re

# arabic or chinese numerals
NUM = r"(?:\d+|[一二三四五六七八九十百千万两]+)"
CURRENCY = r"(?:金币|灵石|银币|铜币|银两|金子)"
BAG = r"(?:背包|行囊|收纳袋|储物袋|包裹|口袋|储物戒)"
_BREAK = r"[^。！？!?\n]"


@dataclass(frozen=True)
class ClaimPattern:
    name: str
    regex: "re.Pattern[str]"
    tools: FrozenSet[str]
    label: str = ""


def _p(name: str, pattern: str, tools: Iterable[str], label: str) -> ClaimPattern:
    return ClaimPattern(name=name, regex=re.compile(pattern), tools=frozenset(tools), label=label)


_ITEM_GRANT_TOOLS = ("add_item", "interact_npc", "update_quest", "execute_battle_action")

CLAIM_PATTERNS: List[ClaimPattern] = [
    _p(
        "pay_currency",
        rf"(?:掏出|拿出|取出|支付|付给|付出|付了|花费|花了|交出|递出|数出|递上)了?{_BREAK}{{0,12}}?{NUM}\s*(?:枚|个|块|两)?\s*{CURRENCY}"
        rf"|收下(?:了)?你的\s*{NUM}\s*(?:枚|个|块)?\s*{CURRENCY}",
        ("interact_npc", "modify_player_data", "enhance_equipment"),
        "支付货币",
    ),
    _p(
        "receive_currency",
        rf"(?:获得|得到|收到|赚到|赚了|拿到|捡到|领取|收获)了?\s*{NUM}\s*(?:枚|个|块|两)?\s*{CURRENCY}",
        ("execute_battle_action", "interact_npc", "update_quest", "modify_player_data", "modify_enemy_hp"),
        "获得货币",
    ),
    _p(
        "store_item",
        rf"[把将]{_BREAK}{{1,15}}?(?:放入|装进|收入|塞进|放进|收进|放回)了?(?:你的)?{BAG}",
        _ITEM_GRANT_TOOLS,
        "收入物品",
    ),
    _p(
        "obtain_items",
        rf"(?:获得|得到|拿到|捡起|捡到|拾取|收获)了?\s*(?:{NUM}\s*(?:个|件|把|瓶|枚|块|株|颗|张|份|根)[^\s，,。！？!?\d]{{1,10}}"
        r"|[「『《“][^」』》”]{1,12}[」』》”](?!\s*(?:称号|头衔)))",
        _ITEM_GRANT_TOOLS,
        "获得物品",
    ),
    _p(
        "equip_item",
        r"(?:装备上|穿上|戴上|换上)了?\s*(?:[「『《][^」』》]{1,12}[」』》]"
        r"|[^\s，,。！？!?]{0,8}(?:剑|刀|枪|甲|盔|靴|戒指|项链|护符|法杖|弓|盾|法袍|铠|手套|头盔))",
        ("use_item",),
        "装备物品",
    ),
    _p(
        "consume_potion",
        r"(?:喝下|服下|吞下|饮下|服用)了?\s*(?:[「『《][^」』》]{1,12}[」』》]"
        r"|[^\s，,。！？!?]{0,8}(?:药水|药剂|丹药|药丸|灵药|灵丹))",
        ("use_item", "execute_battle_action"),
        "使用药品",
    ),
    _p(
        "deal_damage",
        rf"造成了?\s*{NUM}\s*点{_BREAK}{{0,4}}?伤害",
        ("execute_battle_action", "modify_enemy_hp"),
        "造成伤害",
    ),
    _p(
        "restore_stat",
        rf"恢复了?\s*{NUM}\s*点?(?:的)?\s*(?:生命值|生命|法力值|法力|HP|MP|hp|mp|体力|灵力)",
        ("use_item", "execute_battle_action", "interact_npc", "modify_player_data"),
        "恢复属性",
    ),
    _p(
        "level_up",
        rf"(?:升到|升至|提升至|提升到|晋升至|达到)了?\s*(?:第\s*)?{NUM}\s*级",
        ("execute_battle_action", "update_quest", "interact_npc", "modify_player_data", "modify_enemy_hp"),
        "等级提升",
    ),
    _p(
        "accept_quest",
        r"(?:接下|接取|接受)了?\s*(?:任务\s*[「『《“\"][^」』》”\"]{1,20}[」』》”\"]|[「『《“\"][^」』》”\"]{1,20}[」』》”\"]\s*任务)",
        ("interact_npc", "create_quest"),
        "接取任务",
    ),
]


@dataclass
class ConsistencyFinding:
    has_hallucination: bool = False
    reason: Optional[str] = None
    claims: List[Dict[str, Any]] = field(default_factory=list)
    missing_tools: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"hasHallucination": self.has_hallucination}
        if self.reason:
            out["reason"] = self.reason
        if self.claims:
            out["claims"] = list(self.claims)
            out["missingTools"] = list(self.missing_tools)
        return out


def _record_field(rec: Any, key: str) -> Any:
    if isinstance(rec, dict):
        return rec.get(key)
    return getattr(rec, key, None)


def succeeded_tools(records: Sequence[Any]) -> FrozenSet[str]:
    return frozenset(str(_record_field(r, "name")) for r in records or [] if _record_field(r, "success"))


class ConsistencyGuard:
    """Read-only evaluator over a table of claim patterns."""

    def __init__(self, patterns: Optional[Sequence[ClaimPattern]] = None) -> None:
        self.patterns = list(patterns if patterns is not None else CLAIM_PATTERNS)

    def check(self, narrative: str, records: Sequence[Any]) -> ConsistencyFinding:
        text = str(narrative or "")
        if not text.strip():
            return ConsistencyFinding()
        ok_tools = succeeded_tools(records)
        claims: List[Dict[str, Any]] = []
        missing: List[str] = []
        for pat in self.patterns:
            for m in pat.regex.finditer(text):
                if pat.tools & ok_tools:
                    break
                tools = sorted(pat.tools)
                claims.append({"pattern": pat.name, "text": m.group(0), "tools": tools})
                for t in tools:
                    if t not in missing:
                        missing.append(t)
                break
        if not claims:
            return ConsistencyFinding()
        first = claims[0]
        reason = f"叙述声称「{first['text']}」（{_label(first['pattern'], self.patterns)}），但本回合没有成功执行 {' / '.join(first['tools'])}"
        if len(claims) > 1:
            reason += f"；另有 {len(claims) - 1} 处未被工具支持的描述"
        return ConsistencyFinding(has_hallucination=True, reason=reason, claims=claims, missing_tools=missing)


def _label(name: str, patterns: Sequence[ClaimPattern]) -> str:
    for p in patterns:
        if p.name == name:
            return p.label or name
    return name


_DEFAULT_GUARD = ConsistencyGuard()


def check(narrative: str, records: Sequence[Any]) -> ConsistencyFinding:
    return _DEFAULT_GUARD.check(narrative, records)
