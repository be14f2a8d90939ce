import json

import pytest

from eventlog import Event, EventBus, EventType, create_logging_context


def test_bus_assigns_monotonic_sequence():
    bus = EventBus()
    a = bus.publish(Event(EventType.TURN_START, player="p1", data={"message": "hi"}))
    b = bus.publish(Event(EventType.NARRATIVE, player="p1", data={"patch": {"narrative": "h"}}))
    assert (a.sequence, b.sequence) == (1, 2)
    assert b.event_id == "EVT-000002"
    assert b.to_dict()["event_type"] == "narrative"


def test_missing_required_fields_are_rejected():
    bus = EventBus()
    with pytest.raises(ValueError):
        bus.publish(Event(EventType.TOOL_RESULT, data={"tool": "use_item"}))
    with pytest.raises(ValueError):
        bus.publish(Event(EventType.STATE_UPDATE, data={"tool": "use_item"}))
    with pytest.raises(ValueError):
        Event("teleport")


def test_none_values_are_dropped():
    ev = Event(EventType.ERROR, data={"message": "x", "narrative": None, "tools": [None, 1]})
    assert ev.data == {"message": "x", "tools": [1]}


def test_unsubscribe():
    bus = EventBus()
    seen = []
    stop = bus.subscribe(seen.append)
    bus.publish(Event(EventType.SYSTEM, data={"message": "a"}))
    stop()
    bus.publish(Event(EventType.SYSTEM, data={"message": "b"}))
    assert len(seen) == 1


def test_logging_context_writes_both_logs(tmp_path):
    ctx = create_logging_context(tmp_path)
    try:
        ctx.bus.publish(Event(EventType.NARRATIVE, player="p1", data={"patch": {"narrative": "风起"}}))
        ctx.bus.publish(Event(EventType.TOOL_RESULT, player="p1", data={"tool": "use_item", "status": "failure", "error": "物品不存在"}))
        ctx.bus.publish(Event(EventType.DONE, player="p1", data={"narrative": "风起云涌。", "truncated": True}))
    finally:
        ctx.close()
    lines = (tmp_path / "logs" / "run_events.jsonl").read_text(encoding="utf-8").splitlines()
    assert [json.loads(x)["event_type"] for x in lines] == ["narrative", "tool_result", "done"]
    story = (tmp_path / "logs" / "run_story.log").read_text(encoding="utf-8")
    assert "风起云涌。 [截断]" in story
    assert "use_item 失败：物品不存在" in story
    assert "风起\n" not in story


def test_serialised_event_carries_only_known_keys():
    bus = EventBus()
    bus.publish(Event(EventType.SYSTEM, data={"message": "a"}))
    ev = bus.publish(Event(EventType.TURN_START, player="p1", turn=3, data={"message": "hi"}))
    assert set(ev.to_dict()) == {"event_id", "sequence", "timestamp", "event_type", "player", "turn", "message"}
    assert ev.to_dict()["sequence"] == 2


def test_lone_surrogate_does_not_break_the_sinks(tmp_path):
    ctx = create_logging_context(tmp_path)
    try:
        ctx.bus.publish(Event(EventType.DONE, player="p1", data={"narrative": "笑\ud83d"}))
        ctx.bus.publish(Event(EventType.DONE, player="p1", data={"narrative": "下一回合"}))
    finally:
        ctx.close()
    lines = (tmp_path / "logs" / "run_events.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert json.loads(lines[1])["narrative"] == "下一回合"
    assert "下一回合" in (tmp_path / "logs" / "run_story.log").read_text(encoding="utf-8")


def test_rejected_event_does_not_take_a_sequence_number():
    bus = EventBus()
    with pytest.raises(ValueError):
        bus.publish(Event(EventType.DONE, player="p1"))
    ok = bus.publish(Event(EventType.DONE, player="p1", data={"narrative": "夜深了。"}))
    assert ok.sequence == 1
