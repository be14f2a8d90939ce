from __future__ import annotations

"""
Config service: engine settings value + read/write/validate helpers for the
JSON configs under ./configs.

Covers: engine.json (narrator backend, battle rules, turn policy) and
world.json (seed players, areas, quests).

Notes
- EngineConfig is built once at startup and passed explicitly to the
  orchestrator, dispatcher and narrator adapter; nothing reads configuration
  globally afterwards.
- Precedence per narrator field: engine.json value, then environment
  (LLM_MODEL, LLM_TEMPERATURE, LLM_MAX_TOKENS, LLM_BASE_URL), then default.
- Write operations are atomic (write to .tmp then replace) and validate per type.
- This module has no FastAPI dependency; main wires it to HTTP endpoints.
"""

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from world.battle import BattleRules
from world.models import MAX_LEVEL

CONFIG_NAMES = ("engine", "world")

# narrator field -> environment variable consulted when engine.json omits it
_ENV_OVERRIDES = {
    "model": "LLM_MODEL",
    "temperature": "LLM_TEMPERATURE",
    "max_tokens": "LLM_MAX_TOKENS",
    "base_url": "LLM_BASE_URL",
}


@dataclass(frozen=True)
class NarratorConfig:
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    api_key_env: str = "OPENAI_API_KEY"
    temperature: float = 0.7
    max_tokens: int = 4096
    timeout_s: float = 60.0
    stream: bool = True

    @staticmethod
    def from_dict(d: Mapping[str, Any], env: Optional[Mapping[str, str]] = None) -> "NarratorConfig":
        env = os.environ if env is None else env
        base = NarratorConfig()

        def _pick(key: str) -> Any:
            if d.get(key) is not None:
                return d[key]
            var = _ENV_OVERRIDES.get(key)
            if var and str(env.get(var, "")).strip():
                return env[var]
            return getattr(base, key)

        return NarratorConfig(
            base_url=str(_pick("base_url")),
            model=str(_pick("model")),
            api_key_env=str(_pick("api_key_env")),
            temperature=float(_pick("temperature")),
            max_tokens=int(_pick("max_tokens")),
            timeout_s=float(_pick("timeout_s")),
            stream=bool(_pick("stream")),
        )


@dataclass(frozen=True)
class TurnPolicy:
    max_tool_rounds: int = 5
    hallucination_retries: int = 1
    upstream_retries: int = 3
    history_limit: int = 20

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "TurnPolicy":
        base = TurnPolicy()
        return TurnPolicy(
            max_tool_rounds=int(d.get("max_tool_rounds", base.max_tool_rounds)),
            hallucination_retries=int(d.get("hallucination_retries", base.hallucination_retries)),
            upstream_retries=int(d.get("upstream_retries", base.upstream_retries)),
            history_limit=int(d.get("history_limit", base.history_limit)),
        )


def rules_from_dict(d: Mapping[str, Any]) -> BattleRules:
    base = BattleRules()
    return BattleRules(
        crit_chance=float(d.get("crit_chance", base.crit_chance)),
        crit_multiplier=float(d.get("crit_multiplier", base.crit_multiplier)),
        defeat_gold_fraction=float(d.get("defeat_gold_fraction", base.defeat_gold_fraction)),
        rescue_fraction=float(d.get("rescue_fraction", base.rescue_fraction)),
        max_level=int(d.get("max_level", base.max_level)),
    )


@dataclass(frozen=True)
class EngineConfig:
    narrator: NarratorConfig = field(default_factory=NarratorConfig)
    rules: BattleRules = field(default_factory=BattleRules)
    turn: TurnPolicy = field(default_factory=TurnPolicy)

    @staticmethod
    def from_dict(d: Mapping[str, Any], env: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        return EngineConfig(
            narrator=NarratorConfig.from_dict(dict(d.get("narrator") or {}), env),
            rules=rules_from_dict(dict(d.get("rules") or {})),
            turn=TurnPolicy.from_dict(dict(d.get("turn") or {})),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"narrator": asdict(self.narrator), "rules": asdict(self.rules), "turn": asdict(self.turn)}


class ConfigService:
    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._cfg_dir = self._root / "configs"

    # ---------- Core IO ----------
    def _cfg_path(self, name: str) -> Path:
        if name not in CONFIG_NAMES:
            raise KeyError(f"unsupported config: {name}")
        return self._cfg_dir / f"{name}.json"

    def read(self, name: str) -> dict:
        p = self._cfg_path(str(name))
        with p.open("r", encoding="utf-8") as f:
            return json.load(f)

    def load_engine(self, env: Optional[Mapping[str, str]] = None) -> EngineConfig:
        """EngineConfig from engine.json; a missing file yields env/defaults."""
        try:
            data = self.read("engine")
        except FileNotFoundError:
            data = {}
        ok, msg = self.validate_engine(data)
        if not ok:
            raise ValueError(f"configs/engine.json invalid: {msg}")
        return EngineConfig.from_dict(data, env)

    def load_world(self) -> dict:
        data = self.read("world")
        ok, msg = self.validate_world(data)
        if not ok:
            raise ValueError(f"configs/world.json invalid: {msg}")
        return data

    def write(self, name: str, data: dict) -> Tuple[bool, str]:
        name = str(name)
        try:
            path = self._cfg_path(name)
        except KeyError:
            return False, "unsupported config"

        if name == "engine":
            ok, msg = self.validate_engine(data)
        else:
            ok, msg = self.validate_world(data)
        if not ok:
            return False, msg

        try:
            self._atomic_write(path, data)
        except OSError as exc:
            return False, f"write failed: {exc}"
        return True, "ok"

    # ---------- Validation ----------
    def validate_engine(self, obj: dict) -> Tuple[bool, str]:
        if not isinstance(obj, dict):
            return False, "engine config must be a JSON object"
        for section in ("narrator", "rules", "turn"):
            if obj.get(section) is not None and not isinstance(obj.get(section), dict):
                return False, f"{section} must be an object"

        nar = obj.get("narrator") or {}
        for key in ("base_url", "model", "api_key_env"):
            if key in nar and (not isinstance(nar[key], str) or not nar[key].strip()):
                return False, f"narrator.{key} must be a non-empty string"
        ok, msg = _number_in(nar, "temperature", 0.0, 2.0, "narrator")
        if not ok:
            return ok, msg
        ok, msg = _number_in(nar, "timeout_s", 1.0, 600.0, "narrator")
        if not ok:
            return ok, msg
        ok, msg = _int_in(nar, "max_tokens", 1, 200000, "narrator")
        if not ok:
            return ok, msg
        if "stream" in nar and not isinstance(nar["stream"], bool):
            return False, "narrator.stream must be boolean"

        rules = obj.get("rules") or {}
        for key, lo, hi in (
            ("crit_chance", 0.0, 1.0),
            ("crit_multiplier", 1.0, 10.0),
            ("defeat_gold_fraction", 0.0, 1.0),
            ("rescue_fraction", 0.0, 1.0),
        ):
            ok, msg = _number_in(rules, key, lo, hi, "rules")
            if not ok:
                return ok, msg
        ok, msg = _int_in(rules, "max_level", 1, MAX_LEVEL, "rules")
        if not ok:
            return ok, msg

        turn = obj.get("turn") or {}
        for key, lo, hi in (
            ("max_tool_rounds", 1, 20),
            ("hallucination_retries", 0, 5),
            ("upstream_retries", 0, 10),
            ("history_limit", 0, 200),
        ):
            ok, msg = _int_in(turn, key, lo, hi, "turn")
            if not ok:
                return ok, msg
        return True, "ok"

    def validate_world(self, obj: dict) -> Tuple[bool, str]:
        if not isinstance(obj, dict):
            return False, "world config must be a JSON object"
        for section in ("players", "areas", "quests"):
            val = obj.get(section)
            if val is not None and not isinstance(val, list):
                return False, f"{section} must be an array"

        area_ids = set()
        for i, a in enumerate(obj.get("areas") or []):
            if not isinstance(a, dict) or not a.get("id"):
                return False, f"areas[{i}] must be an object with id"
            area_ids.add(str(a["id"]))
            nodes = a.get("nodes") or []
            if not isinstance(nodes, list) or not nodes:
                return False, f"areas[{i}].nodes must be a non-empty array"
            node_ids = [str(n.get("id")) for n in nodes if isinstance(n, dict)]
            if len(node_ids) != len(nodes) or len(set(node_ids)) != len(node_ids):
                return False, f"areas[{i}].nodes must have unique ids"
            for j, c in enumerate(a.get("connections") or []):
                if not (isinstance(c, list) and len(c) >= 2 and c[0] in node_ids and c[1] in node_ids):
                    return False, f"areas[{i}].connections[{j}] must reference known node ids"

        for i, q in enumerate(obj.get("quests") or []):
            if not isinstance(q, dict) or not q.get("id") or not q.get("name"):
                return False, f"quests[{i}] must be an object with id and name"
            if not isinstance(q.get("objectives") or [], list):
                return False, f"quests[{i}].objectives must be an array"

        for i, p in enumerate(obj.get("players") or []):
            if not isinstance(p, dict) or not p.get("id"):
                return False, f"players[{i}] must be an object with id"
            area = p.get("current_area_id") or p.get("currentAreaId")
            if area and area not in area_ids:
                return False, f"players[{i}] references unknown area '{area}'"
            for key in ("hp", "max_hp", "mp", "max_mp", "gold", "level"):
                if key in p:
                    try:
                        if int(p[key]) < 0:
                            return False, f"players[{i}].{key} must be >= 0"
                    except (TypeError, ValueError):
                        return False, f"players[{i}].{key} must be an integer"
        return True, "ok"

    # ---------- Utilities ----------
    @staticmethod
    def _atomic_write(path: Path, obj: dict) -> None:
        tmp = path.with_suffix(path.suffix + ".tmp")
        path.parent.mkdir(parents=True, exist_ok=True)
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(obj, f, ensure_ascii=False, indent=2)
            f.write("\n")
        tmp.replace(path)


def _number_in(section: Mapping[str, Any], key: str, lo: float, hi: float, prefix: str) -> Tuple[bool, str]:
    if key not in section:
        return True, "ok"
    v = section[key]
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return False, f"{prefix}.{key} must be a number"
    if not (lo <= float(v) <= hi):
        return False, f"{prefix}.{key} must be within [{lo}, {hi}]"
    return True, "ok"


def _int_in(section: Mapping[str, Any], key: str, lo: int, hi: int, prefix: str) -> Tuple[bool, str]:
    if key not in section:
        return True, "ok"
    v = section[key]
    if isinstance(v, bool) or not isinstance(v, int):
        return False, f"{prefix}.{key} must be an integer"
    if not (lo <= v <= hi):
        return False, f"{prefix}.{key} must be within [{lo}, {hi}]"
    return True, "ok"
