import asyncio
import logging
from types import SimpleNamespace

import pytest

from config_service import NarratorConfig
from narrator.adapter import AgentScopeNarrator, Narrator, NarratorError


class ScriptedModel:
    """Streams the accumulated text snapshots it was given, like the chat model."""

    def __init__(self, snapshots):
        self.snapshots = snapshots

    async def __call__(self, formatted, tools=None):
        return self._responses()

    async def _responses(self):
        for text in self.snapshots:
            yield SimpleNamespace(content=[{"type": "text", "text": text}])


class PassFormatter:
    async def format(self, msgs):
        return [{"role": m.role, "content": m.content} for m in msgs]


def make_narrator(monkeypatch, snapshots):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    narrator = AgentScopeNarrator(NarratorConfig())
    narrator.model = ScriptedModel(snapshots)
    narrator.formatter = PassFormatter()
    return narrator


async def collect(narrator):
    return [c async for c in narrator.stream("系统", [{"role": "user", "content": "你好"}], [])]


def test_stream_yields_only_new_text(monkeypatch):
    narrator = make_narrator(monkeypatch, ["老周", "老周笑了", "老周笑了", "老周笑了。"])
    chunks = asyncio.run(collect(narrator))
    assert [c.text for c in chunks] == ["老周", "笑了", "。"]


def test_rewritten_snapshot_is_skipped(monkeypatch, caplog):
    narrator = make_narrator(monkeypatch, ["老周", "老周笑了", "老刘笑了", "老周笑了。"])
    with caplog.at_level(logging.WARNING, logger="chaos_saga.narrator"):
        chunks = asyncio.run(collect(narrator))
    assert [c.text for c in chunks] == ["老周", "笑了", "。"]
    assert "".join(c.text for c in chunks) == "老周笑了。"
    assert any("rewrote" in r.getMessage() for r in caplog.records)


def test_missing_api_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(NarratorError, match="OPENAI_API_KEY"):
        AgentScopeNarrator(NarratorConfig())


def test_narrator_interface_is_abstract():
    with pytest.raises(TypeError):
        Narrator()
