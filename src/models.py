"""
Data model for the job and analytics pipeline.

Jobs and derived records are plain dataclasses with explicit conversion to
the flat string records the Redis backends store. Incoming engagement
events are validated with pydantic, mirroring how the API layer validates
request bodies.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import (
    DEFAULT_BACKOFF_DELAY_MS,
    DEFAULT_BACKOFF_TYPE,
    DEFAULT_MAX_ATTEMPTS,
    EVENT_TYPES,
)


def to_epoch_ms(value: datetime) -> int:
    """Convert an aware (or UTC-naive) datetime to epoch milliseconds."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(round(value.timestamp() * 1000))


def from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


# ============================================================================
# JOBS
# ============================================================================


class JobStatus(str, Enum):
    """
    Lifecycle of a queued job.

    FAILED means the last attempt failed and the job is waiting out its
    backoff delay; DEAD_LETTERED is terminal.
    """

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay between retries: exponential (base * 2^(attempt-1)) or fixed."""

    type: str = DEFAULT_BACKOFF_TYPE
    delay_ms: int = DEFAULT_BACKOFF_DELAY_MS

    def __post_init__(self):
        if self.type not in ("exponential", "fixed"):
            raise ValueError(f"Unknown backoff type: {self.type}")
        if self.delay_ms < 0:
            raise ValueError("Backoff delay must be >= 0")

    def delay_for(self, attempt: int) -> int:
        """Delay in ms before retrying after the given (1-based) failed attempt."""
        if self.type == "fixed":
            return self.delay_ms
        return self.delay_ms * 2 ** (max(attempt, 1) - 1)


@dataclass(frozen=True)
class RateLimit:
    """At most `max` dispatches per `duration_ms` window, shared by all workers."""

    max: int
    duration_ms: int

    def __post_init__(self):
        if self.max < 1 or self.duration_ms < 1:
            raise ValueError("Rate limit needs max >= 1 and duration_ms >= 1")


@dataclass
class JobOptions:
    """Per-call overrides; None means "use the queue default"."""

    max_attempts: Optional[int] = None
    backoff: Optional[BackoffPolicy] = None
    rate_limit: Optional[RateLimit] = None
    delay_ms: int = 0
    job_id: Optional[str] = None


@dataclass
class Job:
    id: str
    queue_name: str
    payload: Any
    attempt: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    rate_limit: Optional[RateLimit] = None
    enqueued_at: int = 0
    ready_at: int = 0
    status: JobStatus = JobStatus.PENDING
    last_error: Optional[str] = None
    result: Any = None
    started_at: Optional[int] = None
    finished_at: Optional[int] = None

    def to_record(self) -> Dict[str, str]:
        """Flatten into the string field map stored in a Redis hash."""
        record = {
            "id": self.id,
            "queue": self.queue_name,
            "payload": json.dumps(self.payload),
            "attempt": str(self.attempt),
            "max_attempts": str(self.max_attempts),
            "backoff_type": self.backoff.type,
            "backoff_delay": str(self.backoff.delay_ms),
            "enqueued_at": str(self.enqueued_at),
            "ready_at": str(self.ready_at),
            "status": self.status.value,
            "last_error": self.last_error or "",
            "result": json.dumps(self.result) if self.result is not None else "",
            "started_at": "" if self.started_at is None else str(self.started_at),
            "finished_at": "" if self.finished_at is None else str(self.finished_at),
        }
        # Limiter fields are only present when the job overrides the queue gate
        if self.rate_limit is not None:
            record["limiter_max"] = str(self.rate_limit.max)
            record["limiter_duration"] = str(self.rate_limit.duration_ms)
        return record

    @classmethod
    def from_record(cls, record: Dict[str, str]) -> "Job":
        def _int(name: str) -> Optional[int]:
            value = record.get(name)
            return int(float(value)) if value not in (None, "") else None

        rate_limit = None
        if record.get("limiter_max"):
            rate_limit = RateLimit(
                max=int(record["limiter_max"]),
                duration_ms=int(record["limiter_duration"]),
            )

        return cls(
            id=record["id"],
            queue_name=record["queue"],
            payload=json.loads(record["payload"]),
            attempt=_int("attempt") or 0,
            max_attempts=_int("max_attempts") if record.get("max_attempts") else DEFAULT_MAX_ATTEMPTS,
            backoff=BackoffPolicy(
                type=record.get("backoff_type") or DEFAULT_BACKOFF_TYPE,
                delay_ms=_int("backoff_delay") or 0,
            ),
            rate_limit=rate_limit,
            enqueued_at=_int("enqueued_at") or 0,
            ready_at=_int("ready_at") or 0,
            status=JobStatus(record.get("status") or JobStatus.PENDING.value),
            last_error=record.get("last_error") or None,
            result=json.loads(record["result"]) if record.get("result") else None,
            started_at=_int("started_at"),
            finished_at=_int("finished_at"),
        )


@dataclass
class JobHandle:
    """Returned by enqueue; `created` is False when the job id already existed."""

    id: str
    queue_name: str
    enqueued_at: int
    created: bool = True


@dataclass
class ClaimResult:
    job: Optional[Job] = None
    retry_after_ms: int = 0


# ============================================================================
# ENGAGEMENT EVENTS
# ============================================================================


class EngagementEventIn(BaseModel):
    """Incoming engagement event. Only eventType and occurredAt are required."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event_type: str = Field(alias="eventType")
    occurred_at: datetime = Field(alias="occurredAt")
    profile_id: Optional[str] = Field(default=None, alias="profileId")
    title_id: Optional[str] = Field(default=None, alias="titleId")
    episode_id: Optional[str] = Field(default=None, alias="episodeId")
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    country: Optional[str] = None
    device_id: Optional[str] = Field(default=None, alias="deviceId")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("event_type")
    @classmethod
    def _known_event_type(cls, value: str) -> str:
        if value not in EVENT_TYPES:
            raise ValueError(f"unknown event type {value!r}")
        return value

    @field_validator("profile_id", "title_id", "episode_id", "session_id", mode="before")
    @classmethod
    def _identifier_as_string(cls, value):
        # Ids arrive as strings or integers; bools are not ids
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (str, int)):
            raise ValueError("identifier must be a string or integer")
        return str(value)

    @field_validator("occurred_at", mode="before")
    @classmethod
    def _epoch_ms_allowed(cls, value):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            try:
                return from_epoch_ms(int(value))
            except (OverflowError, OSError, ValueError) as e:
                raise ValueError(f"epoch ms out of range: {value!r}") from e
        return value

    @field_validator("metadata", mode="before")
    @classmethod
    def _opaque_metadata(cls, value):
        # Metadata is stored as given; non-objects are wrapped so tags can merge in
        if value is None:
            return {}
        if not isinstance(value, dict):
            return {"value": value}
        return value

    @field_validator("occurred_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @field_validator("country")
    @classmethod
    def _upper_country(cls, value: Optional[str]) -> Optional[str]:
        return value.strip().upper() or None if value else None


class EngagementEvent(EngagementEventIn):
    """Stored, append-only event. `id` is the monotonically increasing ingestion sequence."""

    id: int
    ingested_at: datetime = Field(alias="ingestedAt")

    @property
    def occurred_at_ms(self) -> int:
        return to_epoch_ms(self.occurred_at)


def playback_progress(metadata: Dict[str, Any]) -> Optional[float]:
    """
    Share of the runtime reached, from event metadata.

    Uses an explicit "progress" ratio when present, otherwise
    positionSec / durationSec. None when neither is usable.
    """
    progress = metadata.get("progress")
    if isinstance(progress, (int, float)) and not isinstance(progress, bool):
        return float(progress)

    position = metadata.get("positionSec")
    duration = metadata.get("durationSec")
    numbers = all(
        isinstance(value, (int, float)) and not isinstance(value, bool)
        for value in (position, duration)
    )
    if numbers and duration > 0:
        return float(position) / float(duration)
    return None


@dataclass
class IngestItemResult:
    index: int
    accepted: bool
    event_id: Optional[int] = None
    reason: Optional[str] = None


@dataclass
class IngestResult:
    items: List[IngestItemResult] = field(default_factory=list)

    @property
    def accepted(self) -> List[IngestItemResult]:
        return [item for item in self.items if item.accepted]

    @property
    def rejected(self) -> List[IngestItemResult]:
        return [item for item in self.items if not item.accepted]

    @property
    def accepted_ids(self) -> List[int]:
        return [item.event_id for item in self.accepted]

    @property
    def status(self) -> str:
        if not self.rejected:
            return "accepted"
        if not self.accepted:
            return "rejected"
        return "partial"


# ============================================================================
# DERIVED RECORDS
# ============================================================================


@dataclass
class PopularitySnapshot:
    title_id: str
    window: str
    country: str
    window_start: int
    window_end: int
    score: float
    rank: int
    computed_at: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PopularitySnapshot":
        return cls(**data)


@dataclass
class ContinueWatchingEntry:
    profile_id: str
    title_id: str
    occurred_at: int
    last_event_type: str
    episode_id: Optional[str] = None
    position_sec: Optional[float] = None
    duration_sec: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContinueWatchingEntry":
        return cls(**data)


@dataclass(frozen=True)
class VariantAssignment:
    experiment: str
    seed: str
    variant: str


@dataclass
class AuditLogEntry:
    action: str
    resource: str
    created_at: int
    actor_id: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ErrorLogEntry:
    message: str
    error_type: str
    created_at: int
    stack: Optional[str] = None
    path: Optional[str] = None
    actor_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AggregationReport:
    window_end: int
    high_water_mark: int
    snapshots_written: Dict[str, int] = field(default_factory=dict)
    events_scanned: int = 0
    elapsed_seconds: float = 0.0
