import json
import random

from narrator.decoder import (
    StreamingDecoder,
    decode_reply,
    plain_text_fallback,
    repair_json,
    validate_document,
)

DOC = json.dumps(
    {
        "thought": "玩家想进酒馆打听消息",
        "narrative": "你推开酒馆的木门，炉火正旺，角落里有人在低声说着\"狼王\"的传闻。",
        "mood": "mysterious",
        "suggestions": ["要一杯麦酒", "凑过去偷听", "离开酒馆"],
        "metadata": {"bgm": "tavern"},
        "actions": [{"tool": "get_area_info", "args": {}}],
    },
    ensure_ascii=False,
)


def feed(chunks):
    dec = StreamingDecoder()
    patches = [p for p in (dec.append(c) for c in chunks) if p]
    return dec, patches


def split_every(text, n):
    return [text[i : i + n] for i in range(0, len(text), n)]


def random_split(text, rng):
    cuts = sorted(rng.sample(range(1, len(text)), rng.randint(1, 12)))
    return [text[a:b] for a, b in zip([0, *cuts], [*cuts, len(text)])]


def test_split_points_do_not_change_the_result():
    whole, _ = feed([DOC])
    expected = whole.finalize()
    assert expected == validate_document(json.loads(DOC))
    rng = random.Random(11)
    splittings = [split_every(DOC, n) for n in (1, 2, 3, 5, 8, 13)]
    splittings += [random_split(DOC, rng) for _ in range(20)]
    for chunks in splittings:
        dec, _ = feed(chunks)
        assert dec.finalize() == expected


def test_narrative_patches_only_grow():
    final = json.loads(DOC)["narrative"]
    for n in (1, 4, 9):
        _, patches = feed(split_every(DOC, n))
        seen = [p["narrative"] for p in patches if "narrative" in p]
        assert seen
        assert seen[-1] == final
        for a, b in zip(seen, seen[1:]):
            assert len(b) > len(a)
            assert b.startswith(a)


def test_patches_carry_only_changed_fields():
    _, patches = feed(split_every(DOC, 4))
    assert sum(1 for p in patches if "mood" in p) == 1
    assert [p["metadata"] for p in patches if "metadata" in p][-1] == {"bgm": "tavern"}
    assert "actions" not in {k for p in patches for k in p}


def test_no_patch_before_an_object_starts():
    dec = StreamingDecoder()
    assert dec.append("") is None
    assert dec.append("  ") is None
    assert dec.append('{"narr') is None
    assert dec.append('ative": "风') == {"narrative": "风"}


def test_repair_closes_open_strings_and_containers():
    assert repair_json('{"narrative": "半句话') == {"narrative": "半句话"}
    assert repair_json('{"narrative": "a", "suggestions": ["x", "y') == {"narrative": "a", "suggestions": ["x", "y"]}
    assert repair_json('{"metadata": {"bgm": "town"') == {"metadata": {"bgm": "town"}}


def test_repair_cuts_back_dangling_tokens():
    assert repair_json('{"narrative": "a", "mo') == {"narrative": "a"}
    assert repair_json('{"narrative": "a", "mood":') == {"narrative": "a"}
    assert repair_json('{"narrative": "a", "count": tr') == {"narrative": "a"}
    assert repair_json('{"narrative": "路\\') == {"narrative": "路"}
    assert repair_json("没有任何JSON") is None


def test_finalize_recovers_truncated_document():
    dec, _ = feed(['{"thought": "x", "narrative": "你拔出长剑，', '刀光一闪'])
    doc = dec.finalize()
    assert doc.narrative == "你拔出长剑，刀光一闪"
    assert doc.suggestions == []


def test_validation_drops_bad_fields():
    doc = validate_document({"narrative": "x", "mood": "angry", "suggestions": ["只有一条"], "actions": [{"tool": ""}, {"tool": "get_player_state"}, "bad"]})
    assert doc.mood is None
    assert doc.suggestions == []
    assert doc.actions == [{"tool": "get_player_state", "args": {}}]


def test_code_fenced_reply_decodes():
    doc = decode_reply("```json\n" + DOC + "\n```")
    assert not doc.fallback
    assert doc.mood == "mysterious"
    assert doc.actions[0]["tool"] == "get_area_info"


def test_fallback_peels_bullet_options():
    text = "你站在十字路口，风里带着雨的味道。\n\n你要做什么？\n- 向北走\n- 向南走\n- 原地休息"
    doc = decode_reply(text)
    assert doc.fallback
    assert doc.narrative == "你站在十字路口，风里带着雨的味道。"
    assert doc.suggestions == ["向北走", "向南走", "原地休息"]


def test_fallback_peels_bracket_options():
    doc = plain_text_fallback("夜色渐深。\n**建议：**\n【休息】 【继续赶路】")
    assert doc.narrative == "夜色渐深。"
    assert doc.suggestions == ["休息", "继续赶路"]


def test_fallback_keeps_text_with_a_single_option():
    text = "你醒了。\n- 起床"
    doc = plain_text_fallback(text)
    assert doc.narrative == text
    assert doc.suggestions == []


def test_fallback_on_empty_reply():
    assert plain_text_fallback("   ").narrative == "..."


def test_split_surrogate_pair_is_held_back():
    dec = StreamingDecoder()
    assert dec.append('{"narrative": "笑\\ud83d') == {"narrative": "笑"}
    assert dec.append('\\ude') is None
    assert dec.append('00"}') == {"narrative": "笑😀"}
    assert dec.narrative == "笑😀" == dec.finalize().narrative
    assert repair_json('{"narrative": "笑\\\\ud83d') == {"narrative": "笑\\ud83d"}
