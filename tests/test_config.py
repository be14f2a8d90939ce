import json
from pathlib import Path

import pytest

from config_service import ConfigService, EngineConfig, NarratorConfig

ROOT = Path(__file__).resolve().parents[1]


def make_service(tmp_path, engine=None):
    (tmp_path / "configs").mkdir()
    if engine is not None:
        (tmp_path / "configs" / "engine.json").write_text(json.dumps(engine), encoding="utf-8")
    return ConfigService(tmp_path)


def test_shipped_configs_are_valid():
    svc = ConfigService(ROOT)
    cfg = svc.load_engine(env={})
    assert cfg.rules.crit_chance == 0.05
    assert cfg.turn.max_tool_rounds == 5
    world = svc.load_world()
    assert world["players"][0]["id"] == "player-1"


def test_crit_chance_out_of_range_is_rejected(tmp_path):
    svc = make_service(tmp_path, {"rules": {"crit_chance": 1.5}})
    ok, msg = svc.validate_engine(svc.read("engine"))
    assert not ok
    assert msg == "rules.crit_chance must be within [0.0, 1.0]"
    with pytest.raises(ValueError):
        svc.load_engine(env={})


def test_type_errors_are_reported(tmp_path):
    svc = make_service(tmp_path)
    assert svc.validate_engine({"narrator": {"stream": "yes"}}) == (False, "narrator.stream must be boolean")
    assert svc.validate_engine({"turn": {"max_tool_rounds": 2.5}}) == (False, "turn.max_tool_rounds must be an integer")
    assert svc.validate_engine({"rules": []}) == (False, "rules must be an object")


def test_file_value_beats_environment(tmp_path):
    svc = make_service(tmp_path, {"narrator": {"model": "from-file"}})
    env = {"LLM_MODEL": "from-env", "LLM_TEMPERATURE": "0.2"}
    cfg = svc.load_engine(env=env)
    assert cfg.narrator.model == "from-file"
    assert cfg.narrator.temperature == 0.2
    assert cfg.narrator.max_tokens == NarratorConfig().max_tokens


def test_missing_engine_file_uses_defaults(tmp_path):
    svc = make_service(tmp_path)
    assert svc.load_engine(env={}) == EngineConfig()


def test_write_validates_and_replaces_atomically(tmp_path):
    svc = make_service(tmp_path, {"rules": {"crit_chance": 0.1}})
    ok, msg = svc.write("engine", {"rules": {"crit_multiplier": 0.5}})
    assert not ok
    assert "crit_multiplier" in msg
    assert svc.read("engine") == {"rules": {"crit_chance": 0.1}}

    ok, msg = svc.write("engine", {"rules": {"crit_chance": 0.2}})
    assert (ok, msg) == (True, "ok")
    assert svc.read("engine") == {"rules": {"crit_chance": 0.2}}
    assert not list((tmp_path / "configs").glob("*.tmp"))
    assert svc.write("secrets", {}) == (False, "unsupported config")


def test_world_references_are_checked(tmp_path, seed):
    svc = make_service(tmp_path)
    assert svc.validate_world(seed) == (True, "ok")
    seed["areas"][0]["connections"].append(["camp", "moon"])
    ok, msg = svc.validate_world(seed)
    assert not ok
    assert "connections" in msg
    seed["areas"][0]["connections"].pop()
    seed["players"][0]["currentAreaId"] = "a9"
    assert svc.validate_world(seed) == (False, "players[0] references unknown area 'a9'")


def test_engine_config_round_trips_through_dict():
    cfg = EngineConfig.from_dict({"turn": {"history_limit": 4}}, env={})
    assert EngineConfig.from_dict(cfg.to_dict(), env={}) == cfg
