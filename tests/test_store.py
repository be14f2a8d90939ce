import random

import pytest

from world.battle import BattleRules, PlayerAction, resolve_round, start_battle
from world.errors import NotFoundError, StoreUnavailableError
from world.models import EnemyTemplate
from world.store import GameStore, InMemoryStore, JsonFileStore


def test_store_returns_copies(store):
    player = store.get_player("p1")
    player.gold = 0
    assert store.get_player("p1").gold == 100
    store.save_player(player)
    assert store.get_player("p1").gold == 0


def test_seed_marks_start_node_explored(store):
    assert store.get_player("p1").explored_nodes == ["camp"]
    assert store.find_quest("史莱姆") is not None
    with pytest.raises(NotFoundError):
        store.get_area("nowhere")


def test_unavailable_store_raises(store):
    store.available = False
    with pytest.raises(StoreUnavailableError):
        store.get_player("p1")


def test_history_limit(store):
    for i in range(5):
        store.append_chat("p1", "user", f"m{i}")
    assert [e.content for e in store.chat_history("p1", 2)] == ["m3", "m4"]
    assert store.chat_history("p1", 0) == []


def test_json_file_store_survives_restart(tmp_path, seed):
    path = tmp_path / "save.json"
    first = JsonFileStore(path)
    first.load_seed(seed)
    rng = random.Random(3)
    player = first.get_player("p1")
    battle = start_battle(player, [EnemyTemplate(name="史莱姆", hp=50, defense=0)], rng, battle_id="b1")
    resolve_round(battle, player, PlayerAction("attack"), BattleRules(crit_chance=0.0), rng)
    first.save_battle(battle)
    first.append_chat("p1", "user", "攻击")
    assert not path.with_suffix(".json.tmp").exists()

    second = JsonFileStore(path)
    restored = second.get_battle("p1")
    assert restored.enemies[0].hp == 40
    assert restored.round_number == 2
    assert second.chat_history("p1")[0].content == "攻击"
    assert second.get_player("p1").name == "旅人"


def test_in_memory_store_starts_empty():
    s = InMemoryStore()
    assert s.list_areas() == []
    assert s.get_battle("p1") is None


def test_store_interface_is_abstract():
    with pytest.raises(TypeError):
        GameStore()

    class HalfStore(GameStore):
        def get_player(self, player_id):
            return None

    with pytest.raises(TypeError):
        HalfStore()
    assert isinstance(InMemoryStore(), GameStore)
