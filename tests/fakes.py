import asyncio
from typing import Any, Dict, List

from narrator.adapter import Narrator, NarratorChunk


class FakeNarrator(Narrator):
    """Plays back one scripted step per stream() call.

    A step is a list of: str (text chunk), NarratorChunk (passed through),
    float (sleep), asyncio.Event (wait for it), Exception (raised).
    """

    def __init__(self, *steps: List[Any]) -> None:
        self.steps = list(steps)
        self.calls: List[Dict[str, Any]] = []

    def stream(self, system_prompt, messages, tools):
        self.calls.append({
            "system": system_prompt,
            "messages": [dict(m) for m in messages],
            "tools": [t["function"]["name"] for t in tools],
        })
        script = self.steps.pop(0) if self.steps else ['{"narrative": "四周一片寂静。"}']
        return self._play(script)

    async def _play(self, script):
        for item in script:
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, asyncio.Event):
                await item.wait()
            elif isinstance(item, float):
                await asyncio.sleep(item)
            elif isinstance(item, NarratorChunk):
                yield item
            else:
                yield NarratorChunk(text=str(item))


async def drain(agen, on_event=None):
    events = []
    async for ev in agen:
        events.append(ev)
        if on_event is not None:
            on_event(ev)
    return events


def play(orch, player_id, message, cancel=None):
    return asyncio.run(drain(orch.run_turn(player_id, message, cancel)))


def types_of(events):
    return [ev.event_type.value for ev in events]
