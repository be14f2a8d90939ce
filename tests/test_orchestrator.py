import asyncio
import json

from eventlog import EventType, create_logging_context
from fakes import FakeNarrator, drain, play, types_of
from narrator.adapter import NarratorChunk, NarratorError, UpstreamTimeout
from narrator.prompts import BATTLE_USER_SUFFIX


def reply(narrative, **extra):
    return json.dumps(dict(narrative=narrative, **extra), ensure_ascii=False)


def chunks(text, n):
    return [text[i : i + n] for i in range(0, len(text), n)]


def test_turn_event_sequence(store, make_orchestrator):
    narrator = FakeNarrator(
        [NarratorChunk(tool_calls=[{"id": "call-1", "name": "move_to_node", "input": {"nodeId": "market"}}])],
        chunks(reply("你穿过人群来到集市，老周正在吆喝。", mood="calm", suggestions=["和老周交谈", "回营地"]), 7),
    )
    orch = make_orchestrator(narrator)
    seen = []
    orch.bus.subscribe(seen.append)
    events = play(orch, "p1", "去集市看看")

    types = types_of(events)
    assert types[:4] == ["turn_start", "tool_call", "tool_result", "state_update"]
    assert set(types[4:-1]) == {"narrative"}
    assert types[-1] == "done"
    seqs = [ev.sequence for ev in events]
    assert seqs == sorted(seqs) and len(set(seqs)) == len(seqs)
    assert seen == events

    call, result = events[1].data, events[2].data
    assert call["callId"] == result["callId"] == "call-1"
    assert result["status"] == "success"
    done = events[-1].data
    assert done["narrative"] == "你穿过人群来到集市，老周正在吆喝。"
    assert done["mood"] == "calm"
    assert done["suggestions"] == ["和老周交谈", "回营地"]
    assert done["tools"][0]["name"] == "move_to_node"
    assert done["consistency"] == {"hasHallucination": False}
    assert done["truncated"] is False

    assert store.get_player("p1").current_node_id == "market"
    assert "move_to_node" in narrator.calls[0]["tools"]
    assert "execute_battle_action" not in narrator.calls[0]["tools"]
    tool_msgs = [m for m in narrator.calls[1]["messages"] if m["role"] == "tool"]
    assert tool_msgs[0]["name"] == "move_to_node"
    assert [(e.role, e.content) for e in store.chat_history("p1")] == [
        ("user", "去集市看看"),
        ("assistant", "你穿过人群来到集市，老周正在吆喝。"),
    ]


def test_narrative_patches_stream_in_order(make_orchestrator):
    narrator = FakeNarrator(chunks(reply("山风呼啸，你裹紧了斗篷，继续向前。"), 3))
    events = play(make_orchestrator(narrator), "p1", "继续走")
    texts = [ev.data["patch"]["narrative"] for ev in events if ev.event_type is EventType.NARRATIVE and "narrative" in ev.data["patch"]]
    assert len(texts) > 1
    assert all(b.startswith(a) and len(b) > len(a) for a, b in zip(texts, texts[1:]))


def test_json_actions_run_in_battle_mode(store, dispatcher, make_orchestrator):
    dispatcher.execute("move_to_node", {"nodeId": "field"}, "p1")
    dispatcher.execute("start_battle", {}, "p1")
    narrator = FakeNarrator(
        [reply("你挥剑砍向史莱姆。", actions=[{"tool": "execute_battle_action", "args": {"action": {"type": "attack"}}}])],
    )
    events = play(make_orchestrator(narrator), "p1", "攻击")

    assert events[0].data["inBattle"] is True
    assert narrator.calls[0]["messages"][-1]["content"].endswith(BATTLE_USER_SUFFIX)
    calls = [ev for ev in events if ev.event_type is EventType.TOOL_CALL]
    assert calls[0].data["callId"] == "act-1-0"
    done = events[-1].data
    assert done["tools"][0]["success"] is True
    battle = store.get_battle("p1")
    assert battle.enemies[0].hp == 10
    assert battle.round_number == 2


def test_tools_outside_the_mode_are_refused(store, make_orchestrator):
    narrator = FakeNarrator(
        [reply("你向天空许愿。", actions=[{"tool": "modify_player_data", "args": {"modifications": [{"field": "gold", "value": 9999}], "reason": "许愿"}}])],
    )
    events = play(make_orchestrator(narrator), "p1", "我要变成富翁")
    assert "modify_player_data" not in narrator.calls[0]["tools"]
    assert events[-1].data["tools"][0]["error_type"] == "not_allowed"
    assert store.get_player("p1").gold == 100


def test_gm_prefix_unlocks_all_tools(make_orchestrator):
    narrator = FakeNarrator([reply("天空裂开一道金光。")])
    events = play(make_orchestrator(narrator), "p1", "/gm 给我100金币")
    assert events[0].data["gm"] is True
    assert "modify_player_data" in narrator.calls[0]["tools"]
    assert narrator.calls[0]["messages"][-1]["content"] == "给我100金币"


def test_last_step_offers_no_tools(make_orchestrator):
    narrator = FakeNarrator(
        [NarratorChunk(tool_calls=[{"id": "c1", "name": "get_player_state", "input": {}}])],
        [reply("你检查了一下行囊。")],
    )
    events = play(make_orchestrator(narrator, max_tool_rounds=1), "p1", "看看状态")
    assert narrator.calls[0]["tools"]
    assert narrator.calls[1]["tools"] == []
    assert events[-1].event_type is EventType.DONE


def test_second_turn_for_same_player_is_rejected(make_orchestrator):
    async def scenario():
        gate = asyncio.Event()
        narrator = FakeNarrator(
            ['{"narrative": "你屏住呼吸，', gate, '等待着。"}'],
            [reply("行者在营地生起了火。")],
        )
        orch = make_orchestrator(narrator)
        first = asyncio.ensure_future(drain(orch.run_turn("p1", "等一等")))
        while not narrator.calls:
            await asyncio.sleep(0)
        assert orch.busy("p1")
        rejected = await drain(orch.run_turn("p1", "再来一次"))
        other = await drain(orch.run_turn("p2", "生火"))
        gate.set()
        finished = await first
        assert not orch.busy("p1")
        return rejected, other, finished

    rejected, other, finished = asyncio.run(scenario())
    assert types_of(rejected) == ["error"]
    assert rejected[0].data["error_type"] == "state_conflict"
    assert other[-1].data["narrative"] == "行者在营地生起了火。"
    assert finished[-1].data["narrative"] == "你屏住呼吸，等待着。"


def test_cancel_stops_pending_tool_calls(store, make_orchestrator):
    narrator = FakeNarrator([
        NarratorChunk(tool_calls=[
            {"id": "c1", "name": "move_to_node", "input": {"nodeId": "market"}},
            {"id": "c2", "name": "move_to_node", "input": {"nodeId": "camp"}},
        ])
    ])
    orch = make_orchestrator(narrator)
    cancel = asyncio.Event()

    def on_event(ev):
        if ev.event_type is EventType.TOOL_RESULT:
            cancel.set()

    events = asyncio.run(drain(orch.run_turn("p1", "去集市再回来", cancel), on_event))
    assert types_of(events) == ["turn_start", "tool_call", "tool_result", "state_update", "error"]
    assert events[-1].data["error_type"] == "cancelled"
    assert len(events[-1].data["tools"]) == 1
    # the started move persisted, the second one never began
    assert store.get_player("p1").current_node_id == "market"
    assert store.chat_history("p1") == []
    assert len(narrator.calls) == 1


def test_timeout_finalizes_partial_reply(make_orchestrator):
    narrator = FakeNarrator(['{"narrative": "你推开木门，屋里', 2.0, '很暗。"}'])
    events = play(make_orchestrator(narrator, timeout_s=0.2), "p1", "进屋")
    systems = [ev.data for ev in events if ev.event_type is EventType.SYSTEM]
    assert systems[0]["kind"] == "timeout"
    done = events[-1].data
    assert events[-1].event_type is EventType.DONE
    assert done["truncated"] is True
    assert done["narrative"] == "你推开木门，屋里"


def test_hallucination_triggers_one_remediation(make_orchestrator):
    narrator = FakeNarrator(
        [reply("你掏出5金币放在柜台上，老周笑着点头。")],
        [reply("你在集市里转了一圈，什么也没买。")],
    )
    events = play(make_orchestrator(narrator), "p1", "买点东西")
    systems = [ev.data for ev in events if ev.event_type is EventType.SYSTEM]
    assert [s["kind"] for s in systems] == ["remediation"]
    assert systems[0]["consistency"]["hasHallucination"] is True
    retry_msgs = narrator.calls[1]["messages"]
    assert retry_msgs[-1]["content"].startswith("[SYSTEM ERROR]")
    assert retry_msgs[-2]["role"] == "assistant"
    done = events[-1].data
    assert done["narrative"] == "你在集市里转了一圈，什么也没买。"
    assert done["consistency"]["hasHallucination"] is False


def test_hallucination_reported_when_retries_run_out(make_orchestrator):
    narrator = FakeNarrator([reply("你掏出5金币放在柜台上。")])
    events = play(make_orchestrator(narrator, hallucination_retries=0), "p1", "付钱")
    assert EventType.SYSTEM not in {ev.event_type for ev in events}
    consistency = events[-1].data["consistency"]
    assert consistency["hasHallucination"] is True
    assert "interact_npc" in consistency["missingTools"]
    assert len(narrator.calls) == 1


def test_store_outage_is_fatal(store, make_orchestrator):
    narrator = FakeNarrator([reply("不会被用到。")])

    def on_event(ev):
        if ev.event_type is EventType.TURN_START:
            store.available = False

    events = asyncio.run(drain(make_orchestrator(narrator).run_turn("p1", "看看四周"), on_event))
    assert types_of(events) == ["turn_start", "error"]
    assert events[-1].data["error_type"] == "store_unavailable"
    assert events[-1].data["fatal"] is True
    assert narrator.calls == []


def test_upstream_error_is_retried(make_orchestrator):
    narrator = FakeNarrator([NarratorError("连接被重置")], [reply("雨停了。")])
    events = play(make_orchestrator(narrator), "p1", "等雨停")
    systems = [ev.data for ev in events if ev.event_type is EventType.SYSTEM]
    assert systems[0]["kind"] == "retry"
    assert events[-1].data["narrative"] == "雨停了。"


def test_upstream_failure_after_retries(make_orchestrator):
    narrator = FakeNarrator([NarratorError("服务不可用")])
    events = play(make_orchestrator(narrator, upstream_retries=0), "p1", "等雨停")
    assert events[-1].event_type is EventType.ERROR
    assert events[-1].data["error_type"] == "upstream"


def test_plain_text_reply_falls_back(make_orchestrator):
    narrator = FakeNarrator(["你站在十字路口。\n\n", "你要做什么？\n- 向北走\n- 向南走"])
    events = play(make_orchestrator(narrator), "p1", "看看")
    done = events[-1].data
    assert done["fallback"] is True
    assert done["narrative"] == "你站在十字路口。"
    assert done["suggestions"] == ["向北走", "向南走"]


def test_unknown_player(make_orchestrator):
    events = play(make_orchestrator(FakeNarrator()), "ghost", "你好")
    assert types_of(events) == ["error"]
    assert events[0].data["error_type"] == "not_found"


def test_backend_timeout_is_treated_as_truncation(make_orchestrator):
    narrator = FakeNarrator(['{"narrative": "雾越来越浓，', UpstreamTimeout("read timed out")])
    events = play(make_orchestrator(narrator), "p1", "往前走")
    assert [ev.data["kind"] for ev in events if ev.event_type is EventType.SYSTEM] == ["timeout"]
    done = events[-1].data
    assert done["truncated"] is True
    assert done["narrative"] == "雾越来越浓，"
    assert len(narrator.calls) == 1


def test_surrogate_pair_split_across_chunks(tmp_path, make_orchestrator):
    narrator = FakeNarrator(['{"narrative": "老周笑了\\ud83d', '\\ude00"}'])
    orch = make_orchestrator(narrator)
    ctx = create_logging_context(tmp_path)
    orch.bus.subscribe(ctx.structured.handle)
    orch.bus.subscribe(ctx.story.handle)
    try:
        events = play(orch, "p1", "逗老周开心")
    finally:
        ctx.close()

    assert types_of(events)[-1] == "done"
    assert events[-1].data["narrative"] == "老周笑了😀"
    texts = [ev.data["patch"]["narrative"] for ev in events if ev.event_type is EventType.NARRATIVE]
    assert texts == ["老周笑了", "老周笑了😀"]
    records = [json.loads(x) for x in (tmp_path / "logs" / "run_events.jsonl").read_text(encoding="utf-8").splitlines()]
    assert records[-1]["narrative"] == "老周笑了😀"


def test_finished_turns_release_their_locks(make_orchestrator):
    narrator = FakeNarrator(*[[reply("风吹过营地。")] for _ in range(3)])
    orch = make_orchestrator(narrator)
    for pid in ("p1", "p2", "nobody"):
        play(orch, pid, "看看四周")
        assert not orch.busy(pid)
    assert orch._locks == {}
