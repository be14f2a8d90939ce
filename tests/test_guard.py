import pytest

from narrator.guard import ConsistencyGuard, check
from world.models import ToolCallRecord

CLAIMS = [
    ("你掏出5金币放在柜台上。", "pay_currency", "interact_npc"),
    ("战斗结束，你获得了30枚金币。", "receive_currency", "execute_battle_action"),
    ("你把狼皮放入背包。", "store_item", "add_item"),
    ("你在树下得到了3瓶回灵散。", "obtain_items", "add_item"),
    ("你获得了「青铜钥匙」。", "obtain_items", "add_item"),
    ("你在祭坛下拾取了“月光石”。", "obtain_items", "add_item"),
    ("你装备上了「青锋剑」，剑身泛着寒光。", "equip_item", "use_item"),
    ("你喝下一瓶红色药水，伤口渐渐愈合。", "consume_potion", "use_item"),
    ("你的剑刃划过，对妖狼造成了25点伤害。", "deal_damage", "execute_battle_action"),
    ("一股暖流涌过全身，你恢复了20点生命。", "restore_stat", "use_item"),
    ("金光一闪，你升到了5级！", "level_up", "execute_battle_action"),
    ("你接下了任务「驱逐狼群」。", "accept_quest", "interact_npc"),
]

FLAVOR = [
    "你走进村口，远处传来几声犬吠。",
    "掌柜正低头数着柜台上的金币，没有理你。",
    "商人说这把剑值50金币，你没有搭话。",
    "你感到体力正在慢慢恢复。",
    "林间的风带着草药的清香，你决定继续前进。",
    "村民们为你欢呼，你获得了「屠狼者」称号般的敬意。",
]


@pytest.mark.parametrize("text,pattern,tool", CLAIMS)
def test_unsupported_claim_is_flagged(text, pattern, tool):
    finding = check(text, [])
    assert finding.has_hallucination
    assert finding.claims[0]["pattern"] == pattern
    assert tool in finding.missing_tools
    assert finding.reason


@pytest.mark.parametrize("text,pattern,tool", CLAIMS)
def test_claim_backed_by_successful_tool_passes(text, pattern, tool):
    records = [ToolCallRecord(name=tool, success=True)]
    assert not check(text, records).has_hallucination


@pytest.mark.parametrize("text", FLAVOR)
def test_flavor_text_is_never_flagged(text):
    assert not check(text, []).has_hallucination


def test_paying_at_the_counter():
    text = "你掏出5金币放在柜台上。"
    assert check(text, []).has_hallucination
    ok = [{"name": "interact_npc", "success": True, "data": {"goldSpent": 5}}]
    assert not check(text, ok).has_hallucination


def test_failed_tool_does_not_back_a_claim():
    failed = [ToolCallRecord(name="interact_npc", success=False, error="金币不足")]
    finding = check("你掏出5金币放在柜台上。", failed)
    assert finding.has_hallucination
    assert finding.to_dict()["missingTools"] == ["enhance_equipment", "interact_npc", "modify_player_data"]


def test_unrelated_tool_does_not_back_a_claim():
    records = [ToolCallRecord(name="move_to_node", success=True)]
    assert check("你获得了30枚金币。", records).has_hallucination


def test_several_claims_are_summarised():
    finding = check("你获得了30金币，又把狼皮放入背包。", [])
    assert [c["pattern"] for c in finding.claims] == ["receive_currency", "store_item"]
    assert "另有 1 处" in finding.reason


def test_guard_does_not_touch_records():
    records = [ToolCallRecord(name="use_item", success=True, data={"hpRestored": 20})]
    snapshot = [r.to_dict() for r in records]
    ConsistencyGuard().check("你恢复了20点生命。", records)
    assert [r.to_dict() for r in records] == snapshot


def test_empty_narrative():
    assert check("", []).to_dict() == {"hasHallucination": False}
