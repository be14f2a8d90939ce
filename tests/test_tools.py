from world.catalog import TOOL_SPECS, openai_tool_schemas


def test_battle_end_to_end(store, dispatcher):
    moved = dispatcher.execute("move_to_node", {"nodeId": "field"}, "p1")
    assert moved.success
    assert moved.data["firstVisit"] is True

    started = dispatcher.execute("start_battle", {}, "p1")
    assert started.success
    assert [e["name"] for e in started.data["enemies"]] == ["史莱姆"]
    assert started.state_delta["battle"]["status"] == "active"

    res = dispatcher.execute("execute_battle_action", {"action": {"type": "skill", "skillId": "skill-strike"}}, "p1")
    assert res.success, res.error
    # 10 * 2.5 - 0 = 25 against 20 HP
    assert res.data["damageDealt"] == 20
    assert res.data["status"] == "won"
    assert res.data["rewards"]["exp"] == 10
    assert res.data["rewards"]["gold"] == 5

    player = store.get_player("p1")
    assert player.mp == 45
    assert player.exp == 10
    assert player.gold == 105
    assert store.get_battle("p1") is None
    assert store.action_log("p1")[-1].data["tool"] == "execute_battle_action"


def test_unknown_skill_leaves_battle_untouched(store, dispatcher):
    dispatcher.execute("move_to_node", {"nodeId": "field"}, "p1")
    dispatcher.execute("start_battle", {}, "p1")
    res = dispatcher.execute("execute_battle_action", {"skillId": "nonexistent"}, "p1")
    assert not res.success
    assert res.error_type == "not_found"
    battle = store.get_battle("p1")
    assert battle.active
    assert battle.round_number == 1
    assert battle.enemies[0].hp == 20
    assert store.get_player("p1").mp == 50


def test_battle_tools_respect_battle_state(store, dispatcher):
    res = dispatcher.execute("execute_battle_action", {"action": "attack"}, "p1")
    assert res.error_type == "state_conflict"
    dispatcher.execute("move_to_node", {"nodeId": "field"}, "p1")
    assert dispatcher.execute("start_battle", {}, "p1").success
    again = dispatcher.execute("start_battle", {}, "p1")
    assert not again.success
    assert again.error_type == "state_conflict"
    # consumables go through the battle round while fighting
    drink = dispatcher.execute("use_item", {"itemId": "item-potion"}, "p1")
    assert drink.error_type == "state_conflict"
    act = dispatcher.execute("execute_battle_action", {"action": {"type": "item", "itemId": "小还丹"}}, "p1")
    assert act.success
    assert act.data["consumedItem"] == "小还丹"


def test_moving_away_flees_the_battle(store, dispatcher):
    dispatcher.execute("move_to_node", {"nodeId": "field"}, "p1")
    dispatcher.execute("start_battle", {}, "p1")
    res = dispatcher.execute("move_to_node", {"nodeId": "camp"}, "p1")
    assert res.success
    assert res.data["escapedFrom"] == ["史莱姆"]
    assert store.get_battle("p1") is None
    assert store.get_player("p1").current_node_id == "camp"


def test_schema_failure_mutates_nothing(store, dispatcher):
    before = store.get_player("p1")
    res = dispatcher.execute("move_to_node", {}, "p1")
    assert res.error_type == "validation"
    assert "nodeId" in res.error
    res = dispatcher.execute("add_item", {"items": [{"name": "神剑", "type": "weapon", "specialEffect": "instant_kill"}]}, "p1")
    assert res.error_type == "validation"
    res = dispatcher.execute("add_item", {"items": [{"name": "石头", "type": "rock"}]}, "p1")
    assert res.error_type == "validation"
    after = store.get_player("p1")
    assert after == before
    assert store.action_log("p1") == []


def test_move_requires_adjacent_node(dispatcher):
    res = dispatcher.execute("move_to_node", {"nodeId": "lair"}, "p1")
    assert res.error_type == "validation"
    res = dispatcher.execute("move_to_node", {"nodeId": "nowhere"}, "p1")
    assert res.error_type == "not_found"
    res = dispatcher.execute("move_to_node", {"nodeId": "巢穴", "force": "true"}, "p1")
    assert res.success


def test_unknown_and_disallowed_tools(dispatcher):
    assert dispatcher.execute("summon_dragon", {}, "p1").error_type == "unknown_tool"
    res = dispatcher.execute("modify_player_data", {"modifications": [], "reason": "x"}, "p1", allowed={"get_player_state"})
    assert res.error_type == "not_allowed"
    assert dispatcher.execute("get_player_state", {}, "ghost").error_type == "not_found"


def test_shop_buy_and_sell(store, dispatcher):
    dispatcher.execute("move_to_node", {"nodeId": "market"}, "p1")
    talk = dispatcher.execute("interact_npc", {"npcId": "老周", "action": "talk"}, "p1")
    assert talk.success
    assert talk.data["shop"][0]["price"] == 20

    buy = dispatcher.execute("interact_npc", {"npcId": "npc-merchant", "action": "buy", "data": {"itemName": "小还丹", "quantity": 2}}, "p1")
    assert buy.success, buy.error
    player = store.get_player("p1")
    assert player.gold == 60
    assert player.find_item("小还丹").quantity == 4

    broke = dispatcher.execute("interact_npc", {"npcId": "老周", "action": "buy", "data": {"itemName": "小还丹", "quantity": 99}}, "p1")
    assert broke.error_type == "validation"
    assert store.get_player("p1").gold == 60

    sell = dispatcher.execute("interact_npc", {"npcId": "老周", "action": "sell", "data": {"itemId": "item-sword"}}, "p1")
    assert sell.success
    player = store.get_player("p1")
    assert player.gold == 72
    assert player.find_item("item-sword") is None


def test_npc_must_be_present(dispatcher):
    res = dispatcher.execute("interact_npc", {"npcId": "老周", "action": "talk"}, "p1")
    assert res.error_type == "not_found"


def test_kill_quest_lifecycle(store, dispatcher):
    dispatcher.execute("move_to_node", {"nodeId": "market"}, "p1")
    accepted = dispatcher.execute("interact_npc", {"npcId": "老周", "action": "accept_quest", "data": {"questId": "quest-slimes"}}, "p1")
    assert accepted.success
    early = dispatcher.execute("interact_npc", {"npcId": "老周", "action": "submit_quest", "data": {"questId": "quest-slimes"}}, "p1")
    assert early.error_type == "validation"

    dispatcher.execute("move_to_node", {"nodeId": "camp"}, "p1")
    dispatcher.execute("move_to_node", {"nodeId": "field"}, "p1")
    dispatcher.execute("start_battle", {}, "p1")
    won = dispatcher.execute("execute_battle_action", {"action": {"type": "skill", "skillId": "skill-strike"}}, "p1")
    assert won.data["questUpdates"][0]["completed"] is True

    dispatcher.execute("move_to_node", {"nodeId": "camp"}, "p1")
    dispatcher.execute("move_to_node", {"nodeId": "market"}, "p1")
    done = dispatcher.execute("interact_npc", {"npcId": "老周", "action": "submit_quest", "data": {"questId": "清理史莱姆"}}, "p1")
    assert done.success, done.error
    player = store.get_player("p1")
    assert player.exp == 10 + 30
    assert player.gold == 105 + 40
    assert player.quest_record("quest-slimes").rewarded

    twice = dispatcher.execute("interact_npc", {"npcId": "老周", "action": "submit_quest", "data": {"questId": "quest-slimes"}}, "p1")
    assert twice.error_type == "state_conflict"
    assert store.get_player("p1").gold == 145


def test_create_quest_clamps_rewards(store, dispatcher):
    res = dispatcher.execute(
        "create_quest",
        {
            "name": "寻找草药",
            "description": "帮老周采三株草药",
            "type": "fetch",
            "objectives": [{"description": "采集草药", "targetCount": 3}],
            "rewards": {"exp": 5000, "gold": 10},
        },
        "p1",
    )
    assert res.success
    assert res.data["rewards"]["exp"] == 30
    assert res.data["clamped"]["exp"] == {"requested": 5000, "granted": 30}
    assert store.find_quest("寻找草药") is not None


def test_modify_player_data(store, dispatcher):
    res = dispatcher.execute(
        "modify_player_data",
        {"modifications": [{"field": "gold", "value": 500}, {"field": "hp", "value": "20", "operation": "subtract"}], "reason": "GM调试"},
        "p1",
    )
    assert res.success, res.error
    player = store.get_player("p1")
    assert player.gold == 500
    assert player.hp == 80
    bad = dispatcher.execute("modify_player_data", {"modifications": [{"field": "name", "value": 1}], "reason": "x"}, "p1")
    assert bad.error_type == "validation"


def test_equip_and_swap_weapon(store, dispatcher):
    on = dispatcher.execute("use_item", {"itemId": "铁剑"}, "p1")
    assert on.success
    assert store.get_player("p1").attack == 14
    off = dispatcher.execute("use_item", {"itemId": "铁剑"}, "p1")
    assert off.data["equipped"] is False
    assert store.get_player("p1").attack == 10


def test_tool_result_record_for_guard(dispatcher):
    res = dispatcher.execute("get_player_state", {}, "p1")
    rec = res.to_record("get_player_state", {})
    assert rec.success
    assert rec.data["location"]["nodeName"] == "营地"
    assert res.to_dict()["success"] is True


def test_tool_schemas_come_from_argument_models():
    move = TOOL_SPECS["move_to_node"].parameters
    assert move["required"] == ["nodeId"]
    assert move["properties"]["force"]["type"] == "boolean"
    assert "title" not in move
    names = [s["function"]["name"] for s in openai_tool_schemas(["use_item", "ghost"])]
    assert names == ["use_item"]
    assert TOOL_SPECS["get_player_state"].parameters["properties"] == {}


def test_arguments_are_coerced_and_unknown_keys_dropped(store, dispatcher):
    res = dispatcher.execute("move_to_node", {"node_id": "market", "force": "false", "speed": 9, "note": None}, "p1")
    assert res.success, res.error
    assert store.action_log("p1")[-1].data["args"] == {"nodeId": "market", "force": False}


def test_argument_errors_name_the_field(store, dispatcher):
    res = dispatcher.execute("modify_player_data", {"modifications": [{"field": "gold", "value": "lots"}], "reason": "x"}, "p1")
    assert res.error_type == "validation"
    assert "modifications.0.value" in res.error
    blank = dispatcher.execute("use_item", {"itemId": "   "}, "p1")
    assert blank.error_type == "validation"
    assert "缺少参数：itemId" in blank.error
    assert store.get_player("p1").gold == 100


def test_gm_cannot_revive_a_defeated_enemy(store, dispatcher):
    enemies = [{"name": "史莱姆", "level": 1}, {"name": "野狼", "level": 1}]
    assert dispatcher.execute("start_battle", {"enemies": enemies}, "p1").success
    killed = dispatcher.execute("modify_enemy_hp", {"enemyIndex": 0, "value": 0}, "p1")
    assert killed.success, killed.error
    assert store.get_battle("p1").active

    for args in ({"enemyIndex": 0, "value": 50}, {"enemyName": "史莱姆", "value": 5, "operation": "add"}):
        res = dispatcher.execute("modify_enemy_hp", args, "p1")
        assert not res.success
        assert res.error_type == "state_conflict"
    battle = store.get_battle("p1")
    assert battle.enemies[0].hp == 0
    assert battle.enemies[1].alive

    hurt = dispatcher.execute("modify_enemy_hp", {"value": 3, "operation": "subtract"}, "p1")
    assert hurt.success
    assert hurt.data["enemy"] == "野狼"
