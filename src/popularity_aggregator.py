"""
Popularity aggregation job.

Recomputes per-title popularity rankings from the raw event log for every
configured window (DAILY, TRENDING) and every country, plus a GLOBAL
ranking across all countries. Rankings replace the previous snapshot sets
wholesale in one atomic commit; readers see either the old or the new sets.

A run is pinned to the moment it starts: the window upper bound is "now"
at scan start and only events whose id is at or below the high-water mark
read at that moment are considered. Events ingested while the run is in
progress are left for the next run.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from config import (
    AGGREGATION_DEADLINE_SECONDS,
    COMPLETION_THRESHOLD,
    GLOBAL_SEGMENT,
    JOB_LOCK_TTL,
    POPULARITY_COMPLETION_BONUS,
    POPULARITY_EVENT_WEIGHTS,
    POPULARITY_WINDOWS,
    SCORE_PRECISION,
    TRENDING_CACHE_PREFIX,
    UNKNOWN_COUNTRY,
)
from errors import AggregationError
from models import AggregationReport, EngagementEvent, PopularitySnapshot, playback_progress
from storage import EventStore, JobLock, SnapshotStore
from utils.common_utils import now_ms, time_execution
from utils.metrics_utils import AGGREGATION_DURATION, AGGREGATION_RUNS

logger = logging.getLogger(__name__)

JOB_NAME = "popularity_snapshots"
HOUR_MS = 60 * 60 * 1000

# Two events with the same values in all of these are the same event delivered twice
DEDUPE_COLUMNS = ["event_type", "profile_id", "title_id", "episode_id", "session_id", "occurred_at_ms"]


# ============================================================================
# SCORING
# ============================================================================


def events_to_frame(events: Iterable[EngagementEvent]) -> pd.DataFrame:
    """Flatten events into the columns scoring needs."""
    rows = [
        {
            "id": event.id,
            "event_type": event.event_type,
            "profile_id": event.profile_id,
            "title_id": event.title_id,
            "episode_id": event.episode_id,
            "session_id": event.session_id,
            "country": event.country or UNKNOWN_COUNTRY,
            "occurred_at_ms": event.occurred_at_ms,
            "progress": playback_progress(event.metadata),
        }
        for event in events
    ]
    columns = ["id", *DEDUPE_COLUMNS, "country", "progress"]
    return pd.DataFrame(rows, columns=columns)


def score_events(
    df: pd.DataFrame,
    weights: Dict[str, float] = POPULARITY_EVENT_WEIGHTS,
    completion_bonus: float = POPULARITY_COMPLETION_BONUS,
    completion_threshold: float = COMPLETION_THRESHOLD,
) -> pd.DataFrame:
    """
    Attach a `points` column to every scoring event.

    Algorithm:
        1. Keep events with a titleId and a weighted event type
        2. Drop exact duplicates (same type, profile, title, episode, session, occurredAt)
        3. points = weight(eventType), plus the completion bonus for PLAY_END
           events whose progress reached the threshold
    """
    df = df[df["title_id"].notna() & df["event_type"].isin(list(weights))]
    df = df.sort_values("id").drop_duplicates(subset=DEDUPE_COLUMNS, keep="first")

    progress = pd.to_numeric(df["progress"], errors="coerce").fillna(0.0)
    completed = (df["event_type"] == "PLAY_END") & (progress >= completion_threshold)

    df = df.assign(
        points=df["event_type"].map(weights).astype(float)
        + np.where(completed, completion_bonus, 0.0)
    )
    return df


def rank_titles(scored: pd.DataFrame) -> List[Tuple[str, float]]:
    """
    Sum points per title and order deterministically.

    Returns:
        [(title_id, score)] sorted by score desc, then title_id asc
    """
    if scored.empty:
        return []

    totals = scored.groupby("title_id", sort=False)["points"].sum().round(SCORE_PRECISION)
    ranked = (
        totals.reset_index(name="score")
        .sort_values(["score", "title_id"], ascending=[False, True], kind="mergesort")
    )
    return [(str(title_id), float(score)) for title_id, score in zip(ranked["title_id"], ranked["score"])]


def build_snapshots(
    events: Iterable[EngagementEvent],
    window_end: int,
    windows: Dict[str, int] = POPULARITY_WINDOWS,
    weights: Dict[str, float] = POPULARITY_EVENT_WEIGHTS,
    completion_bonus: float = POPULARITY_COMPLETION_BONUS,
    completion_threshold: float = COMPLETION_THRESHOLD,
) -> Dict[Tuple[str, str], List[PopularitySnapshot]]:
    """
    Compute every (window, country) ranking for a run.

    Pure function of its inputs, so re-running over the same events and
    window_end yields identical snapshots.
    """
    scored = score_events(events_to_frame(events), weights, completion_bonus, completion_threshold)
    segments: Dict[Tuple[str, str], List[PopularitySnapshot]] = {}

    for window, hours in windows.items():
        window_start = window_end - hours * HOUR_MS
        in_window = scored[
            (scored["occurred_at_ms"] >= window_start) & (scored["occurred_at_ms"] <= window_end)
        ]

        groups = [(GLOBAL_SEGMENT, in_window)]
        groups.extend(
            (str(country), rows) for country, rows in in_window.groupby("country", sort=True)
        )

        for country, rows in groups:
            segments[(window, country)] = [
                PopularitySnapshot(
                    title_id=title_id,
                    window=window,
                    country=country,
                    window_start=window_start,
                    window_end=window_end,
                    score=score,
                    rank=rank,
                    computed_at=window_end,
                )
                for rank, (title_id, score) in enumerate(rank_titles(rows), start=1)
            ]

    return segments


# ============================================================================
# JOB
# ============================================================================


class PopularityAggregator:
    """
    Scheduled popularity snapshot job.

    Args:
        events: EventStore to scan
        snapshots: SnapshotStore receiving the committed rankings
        lock: JobLock guarding against concurrent runs
        cache: Optional TTLCache whose trending entries are cleared after commit
        error_recorder: Optional ErrorRecorder for failed runs
        clock: Seconds clock, injectable for tests
    """

    def __init__(
        self,
        events: EventStore,
        snapshots: SnapshotStore,
        lock: JobLock,
        cache=None,
        error_recorder=None,
        clock: Callable[[], float] = time.time,
        windows: Optional[Dict[str, int]] = None,
        weights: Optional[Dict[str, float]] = None,
    ):
        self.events = events
        self.snapshots = snapshots
        self.lock = lock
        self.cache = cache
        self.error_recorder = error_recorder
        self.clock = clock
        self.windows = windows or POPULARITY_WINDOWS
        self.weights = weights or POPULARITY_EVENT_WEIGHTS

    async def run(self) -> Optional[AggregationReport]:
        """
        Run one aggregation pass.

        Returns:
            AggregationReport, or None when another run holds the lock

        Algorithm:
            1. Acquire distributed lock (reject the run if held)
            2. Pin windowEnd = now and the high-water mark
            3. Scan the longest window, score, rank per window and country
            4. Commit all snapshot sets atomically, then clear cached trending reads
            5. Release lock
        """
        if not await self.lock.acquire(JOB_NAME, ttl=JOB_LOCK_TTL):
            logger.info(f"Skipping {JOB_NAME} - another worker is handling it")
            AGGREGATION_RUNS.labels(job=JOB_NAME, outcome="skipped").inc()
            return None

        start_time = time.time()
        try:
            report = await self._aggregate()
            AGGREGATION_RUNS.labels(job=JOB_NAME, outcome="success").inc()
            return report

        except Exception as e:
            # Nothing was committed; the previous snapshots stay current
            logger.error(f"Error in {JOB_NAME}: {e}", exc_info=True)
            AGGREGATION_RUNS.labels(job=JOB_NAME, outcome="failure").inc()
            if self.error_recorder is not None:
                await self.error_recorder.record(e, path=f"job:{JOB_NAME}")
            raise

        finally:
            AGGREGATION_DURATION.labels(job=JOB_NAME).observe(time.time() - start_time)
            # Always release lock
            await self.lock.release(JOB_NAME)

    @time_execution
    async def _aggregate(self) -> AggregationReport:
        started = time.monotonic()
        window_end = now_ms(self.clock)
        high_water_mark = await self.events.high_water_mark()

        longest_ms = max(self.windows.values()) * HOUR_MS
        events = await self.events.scan(window_end - longest_ms, window_end, high_water_mark)
        logger.info(
            f"Scanning {len(events)} event(s) up to id {high_water_mark}, windowEnd={window_end}"
        )

        segments = build_snapshots(events, window_end, windows=self.windows, weights=self.weights)
        await self.snapshots.replace_all(segments)

        if self.cache is not None:
            cleared = self.cache.clear(TRENDING_CACHE_PREFIX)
            logger.debug(f"Cleared {cleared} cached trending read(s)")

        report = AggregationReport(
            window_end=window_end,
            high_water_mark=high_water_mark,
            snapshots_written={f"{window}:{country}": len(rows) for (window, country), rows in segments.items()},
            events_scanned=len(events),
            elapsed_seconds=time.monotonic() - started,
        )
        logger.info(
            f"{JOB_NAME} committed {len(segments)} snapshot set(s) in {report.elapsed_seconds:.2f}s"
        )
        return report

    async def run_with_deadline(
        self, deadline_seconds: float = AGGREGATION_DEADLINE_SECONDS
    ) -> Optional[AggregationReport]:
        """
        run() bounded by a caller deadline.

        Raises:
            AggregationError: deadline exceeded; the run was cancelled before commit
        """
        try:
            return await asyncio.wait_for(self.run(), timeout=deadline_seconds)
        except asyncio.TimeoutError as e:
            raise AggregationError(f"{JOB_NAME} exceeded its {deadline_seconds}s deadline") from e
