"""
Test helper functions for building events and driving time.

Simple, reusable functions plus one controllable clock.
"""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional


class FakeClock:
    """
    Seconds clock that only moves when told to.

    Usable anywhere a component takes `clock=` and, through sleep(), as the
    injectable sleep of QueueWorker.
    """

    def __init__(self, start: float = 0.0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def advance_ms(self, ms: int) -> None:
        self.now += ms / 1000

    async def sleep(self, seconds: float) -> None:
        self.advance(seconds)
        await asyncio.sleep(0)

    @property
    def ms(self) -> int:
        return int(round(self.now * 1000))


def iso(epoch_seconds: float) -> str:
    """ISO-8601 UTC timestamp for an epoch value."""
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat()


def make_event(
    event_type: str,
    occurred_at: float,
    title_id: Optional[str] = None,
    profile_id: Optional[str] = None,
    country: Optional[str] = None,
    session_id: Optional[str] = None,
    episode_id: Optional[str] = None,
    **metadata,
) -> Dict:
    """
    Build a raw engagement event as a client would send it.

    Args:
        event_type: PLAY_START, PLAY_END, ...
        occurred_at: Epoch seconds
        **metadata: Stored in the event's metadata (positionSec, durationSec, ...)
    """
    event = {"eventType": event_type, "occurredAt": iso(occurred_at)}
    if title_id is not None:
        event["titleId"] = title_id
    if profile_id is not None:
        event["profileId"] = profile_id
    if country is not None:
        event["country"] = country
    if session_id is not None:
        event["sessionId"] = session_id
    if episode_id is not None:
        event["episodeId"] = episode_id
    if metadata:
        event["metadata"] = metadata
    return event


def plays(title_id: str, count: int, occurred_at: float, country: Optional[str] = None, event_type: str = "PLAY_START") -> List[Dict]:
    """`count` distinct playback events for one title (distinct profiles)."""
    return [
        make_event(event_type, occurred_at, title_id=title_id, profile_id=f"p{title_id}_{i}", country=country)
        for i in range(count)
    ]
