import copy
import random

import pytest

from config_service import EngineConfig, NarratorConfig, TurnPolicy
from orchestrator import TurnOrchestrator
from world.battle import BattleRules
from world.store import InMemoryStore
from world.tools import ToolDispatcher

SEED = {
    "players": [
        {
            "id": "p1",
            "name": "旅人",
            "hp": 100,
            "maxHp": 100,
            "mp": 50,
            "maxMp": 50,
            "attack": 10,
            "defense": 5,
            "speed": 10,
            "gold": 100,
            "currentAreaId": "a1",
            "currentNodeId": "camp",
            "skills": [
                {"id": "skill-strike", "name": "重击", "damage": 2.5, "mpCost": 5},
                {"id": "skill-whirl", "name": "旋风斩", "damage": 1.0, "mpCost": 8, "effect": "aoe"},
            ],
            "inventory": [
                {"id": "item-potion", "name": "小还丹", "type": "consumable", "quantity": 2, "stats": {"hpRestore": 30}},
                {"id": "item-sword", "name": "铁剑", "type": "weapon", "stats": {"attack": 4}},
            ],
        },
        {
            "id": "p2",
            "name": "行者",
            "hp": 80,
            "maxHp": 80,
            "mp": 30,
            "maxMp": 30,
            "attack": 8,
            "defense": 3,
            "gold": 20,
            "currentAreaId": "a1",
            "currentNodeId": "camp",
        },
    ],
    "areas": [
        {
            "id": "a1",
            "name": "试炼谷",
            "nodes": [
                {"id": "camp", "name": "营地", "type": "safe"},
                {
                    "id": "market",
                    "name": "集市",
                    "type": "npc",
                    "data": {
                        "npc": {
                            "id": "npc-merchant",
                            "name": "老周",
                            "dialogue": "看看吧，都是好货。",
                            "shop": [
                                {"name": "小还丹", "type": "consumable", "price": 20, "stats": {"hpRestore": 30}},
                            ],
                            "quests": ["quest-slimes"],
                        }
                    },
                },
                {
                    "id": "field",
                    "name": "荒野",
                    "type": "battle",
                    "data": {
                        "enemyTemplates": [
                            {"name": "史莱姆", "level": 1, "hp": 20, "attack": 5, "defense": 0, "speed": 3, "exp": 10, "gold": 5},
                        ]
                    },
                },
                {
                    "id": "lair",
                    "name": "巢穴",
                    "type": "boss",
                    "data": {"boss": {"name": "史莱姆王", "level": 3, "hp": 120, "attack": 12, "defense": 4, "exp": 80, "gold": 30}},
                },
            ],
            "connections": [["camp", "market"], ["camp", "field"], ["field", "lair"]],
        }
    ],
    "quests": [
        {
            "id": "quest-slimes",
            "name": "清理史莱姆",
            "description": "荒野里的史莱姆越来越多了。",
            "type": "kill",
            "npcId": "npc-merchant",
            "objectives": [{"description": "击败史莱姆", "targetType": "kill", "targetId": "史莱姆", "targetCount": 1}],
            "rewards": {"exp": 30, "gold": 40},
        }
    ],
}

NO_CRITS = BattleRules(crit_chance=0.0)


@pytest.fixture
def seed():
    return copy.deepcopy(SEED)


@pytest.fixture
def store(seed):
    s = InMemoryStore()
    s.load_seed(seed)
    return s


@pytest.fixture
def dispatcher(store):
    return ToolDispatcher(store, NO_CRITS, random.Random(7))


@pytest.fixture
def make_orchestrator(store, dispatcher):
    def _make(narrator, *, timeout_s=5.0, **turn):
        config = EngineConfig(
            narrator=NarratorConfig(timeout_s=timeout_s),
            rules=NO_CRITS,
            turn=TurnPolicy(**turn),
        )
        return TurnOrchestrator(store, dispatcher, narrator, config)

    return _make
