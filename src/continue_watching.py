"""
Continue-watching (recent views) job.

Derives one resume entry per (profile, title) from playback events in a
trailing window. The most recent event wins (ties broken by event id); the
resume position comes from the most recent PLAY_END. Titles whose latest
event is a completed PLAY_END are finished and dropped. Each profile keeps
its newest entries only, and the whole result set replaces the previous
one atomically.
"""

import logging
import time
from typing import Callable, Dict, Iterable, List, Optional

import pandas as pd

from config import (
    COMPLETION_THRESHOLD,
    CONTINUE_WATCHING_LIMIT,
    CONTINUE_WATCHING_WINDOW_DAYS,
    JOB_LOCK_TTL,
)
from models import ContinueWatchingEntry, EngagementEvent, playback_progress
from storage import ContinueWatchingStore, EventStore, JobLock
from utils.common_utils import now_ms
from utils.metrics_utils import AGGREGATION_DURATION, AGGREGATION_RUNS

logger = logging.getLogger(__name__)

JOB_NAME = "continue_watching"
DAY_MS = 24 * 60 * 60 * 1000
PLAYBACK_EVENTS = ["PLAY_START", "PLAY_END"]


def _number(value) -> Optional[float]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return None


def build_continue_watching(
    events: Iterable[EngagementEvent],
    limit: int = CONTINUE_WATCHING_LIMIT,
    completion_threshold: float = COMPLETION_THRESHOLD,
) -> Dict[str, List[ContinueWatchingEntry]]:
    """
    Resume entries per profile, newest first.

    Algorithm:
        1. Keep PLAY_START / PLAY_END events with a profile and a title
        2. Order by (occurredAt, id); the last row per (profile, title) wins
        3. Take position/duration from the last PLAY_END of the pair
        4. Drop pairs whose winning event is a completed PLAY_END
        5. Per profile, sort by recency and keep `limit` entries
    """
    rows = [
        {
            "id": event.id,
            "event_type": event.event_type,
            "profile_id": event.profile_id,
            "title_id": event.title_id,
            "episode_id": event.episode_id,
            "occurred_at_ms": event.occurred_at_ms,
            "position_sec": _number(event.metadata.get("positionSec")),
            "duration_sec": _number(event.metadata.get("durationSec")),
            "progress": playback_progress(event.metadata),
        }
        for event in events
        if event.event_type in PLAYBACK_EVENTS and event.profile_id and event.title_id
    ]
    if not rows:
        return {}

    df = pd.DataFrame(rows).sort_values(["occurred_at_ms", "id"], kind="mergesort")
    pair = ["profile_id", "title_id"]

    latest = df.groupby(pair, sort=False).tail(1).set_index(pair)
    last_end = (
        df[df["event_type"] == "PLAY_END"]
        .groupby(pair, sort=False)
        .tail(1)
        .set_index(pair)[["position_sec", "duration_sec"]]
    )
    latest = latest.drop(columns=["position_sec", "duration_sec"]).join(last_end, how="left")

    progress = pd.to_numeric(latest["progress"], errors="coerce")
    finished = (latest["event_type"] == "PLAY_END") & (progress >= completion_threshold)
    latest = latest[~finished].reset_index()

    result: Dict[str, List[ContinueWatchingEntry]] = {}
    ordered = latest.sort_values(["occurred_at_ms", "id"], ascending=[False, False], kind="mergesort")
    for profile_id, group in ordered.groupby("profile_id", sort=True):
        result[str(profile_id)] = [
            ContinueWatchingEntry(
                profile_id=str(row.profile_id),
                title_id=str(row.title_id),
                occurred_at=int(row.occurred_at_ms),
                last_event_type=row.event_type,
                episode_id=None if pd.isna(row.episode_id) else str(row.episode_id),
                position_sec=None if pd.isna(row.position_sec) else float(row.position_sec),
                duration_sec=None if pd.isna(row.duration_sec) else float(row.duration_sec),
            )
            for row in group.head(limit).itertuples(index=False)
        ]
    return result


class ContinueWatchingJob:
    """
    Scheduled continue-watching rebuild.

    Args:
        events: EventStore to scan
        store: ContinueWatchingStore receiving the result
        lock: JobLock guarding against concurrent runs
        error_recorder: Optional ErrorRecorder for failed runs
        clock: Seconds clock, injectable for tests
    """

    def __init__(
        self,
        events: EventStore,
        store: ContinueWatchingStore,
        lock: JobLock,
        error_recorder=None,
        clock: Callable[[], float] = time.time,
        window_days: int = CONTINUE_WATCHING_WINDOW_DAYS,
        limit: int = CONTINUE_WATCHING_LIMIT,
    ):
        self.events = events
        self.store = store
        self.lock = lock
        self.error_recorder = error_recorder
        self.clock = clock
        self.window_days = window_days
        self.limit = limit

    async def run(self) -> Optional[Dict[str, int]]:
        """
        Rebuild all continue-watching lists.

        Returns:
            {profile_id: entry count}, or None when another run holds the lock
        """
        if not await self.lock.acquire(JOB_NAME, ttl=JOB_LOCK_TTL):
            logger.info(f"Skipping {JOB_NAME} - another worker is handling it")
            AGGREGATION_RUNS.labels(job=JOB_NAME, outcome="skipped").inc()
            return None

        start_time = time.time()
        try:
            window_end = now_ms(self.clock)
            high_water_mark = await self.events.high_water_mark()
            events = await self.events.scan(
                window_end - self.window_days * DAY_MS, window_end, high_water_mark
            )

            entries = build_continue_watching(events, limit=self.limit)
            await self.store.replace_all(entries)

            AGGREGATION_RUNS.labels(job=JOB_NAME, outcome="success").inc()
            logger.info(
                f"{JOB_NAME} rebuilt {len(entries)} profile(s) from {len(events)} event(s) "
                f"in {time.time() - start_time:.2f}s"
            )
            return {profile_id: len(rows) for profile_id, rows in entries.items()}

        except Exception as e:
            logger.error(f"Error in {JOB_NAME}: {e}", exc_info=True)
            AGGREGATION_RUNS.labels(job=JOB_NAME, outcome="failure").inc()
            if self.error_recorder is not None:
                await self.error_recorder.record(e, path=f"job:{JOB_NAME}")
            raise

        finally:
            AGGREGATION_DURATION.labels(job=JOB_NAME).observe(time.time() - start_time)
            # Always release lock
            await self.lock.release(JOB_NAME)
