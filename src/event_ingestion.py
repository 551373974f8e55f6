"""
Engagement event ingestion with partial acceptance.

Every item of a batch is validated on its own. Valid items are appended to
the event log in one transaction; invalid items are reported back with a
reason code and never abort the batch. No deduplication happens here:
the aggregator drops exact duplicates when it scores.
"""

import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError

from bucketing import assign_variant
from models import EngagementEvent, EngagementEventIn, IngestItemResult, IngestResult
from storage import EventStore
from utils.common_utils import now_ms
from utils.metrics_utils import EVENTS_INGESTED, EVENTS_REJECTED

logger = logging.getLogger(__name__)

# Reason codes reported for rejected items
MISSING_EVENT_TYPE = "missing_event_type"
INVALID_EVENT_TYPE = "invalid_event_type"
MISSING_OCCURRED_AT = "missing_occurred_at"
INVALID_OCCURRED_AT = "invalid_occurred_at"
INVALID_FIELD = "invalid_field"
NOT_AN_OBJECT = "not_an_object"

_FIELD_REASONS = {
    "eventType": INVALID_EVENT_TYPE,
    "event_type": INVALID_EVENT_TYPE,
    "occurredAt": INVALID_OCCURRED_AT,
    "occurred_at": INVALID_OCCURRED_AT,
}


def _field(item: Dict, alias: str, name: str) -> Any:
    return item.get(alias, item.get(name))


def validate_event(item: Any):
    """
    Validate one raw event.

    Returns:
        (EngagementEventIn, None) when valid, (None, reason_code) otherwise
    """
    if not isinstance(item, dict):
        return None, NOT_AN_OBJECT
    if _field(item, "eventType", "event_type") in (None, ""):
        return None, MISSING_EVENT_TYPE
    if _field(item, "occurredAt", "occurred_at") in (None, ""):
        return None, MISSING_OCCURRED_AT

    try:
        return EngagementEventIn.model_validate(item), None
    except ValidationError as e:
        errors = e.errors()
        first_field = errors[0]["loc"][0] if errors and errors[0]["loc"] else None
        return None, _FIELD_REASONS.get(first_field, INVALID_FIELD)


class EventIngestor:
    """
    Validate and append engagement events.

    Args:
        store: EventStore receiving accepted events
        clock: Seconds clock used for ingestedAt, injectable for tests
    """

    def __init__(self, store: EventStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock

    async def ingest(
        self,
        events: Iterable[Any],
        experiment: Optional[str] = None,
        variant: Optional[str] = None,
    ) -> IngestResult:
        """
        Ingest a batch.

        Args:
            events: Raw event objects (dicts with camelCase or snake_case keys)
            experiment: Optional experiment name merged into each event's metadata
            variant: Variant for the experiment; when omitted it is bucketed
                from the event's profileId (or sessionId)

        Returns:
            IngestResult with one IngestItemResult per input item, in order
        """
        results: List[Optional[IngestItemResult]] = []
        valid: List[EngagementEventIn] = []
        valid_positions: List[int] = []

        for index, item in enumerate(events):
            event, reason = validate_event(item)
            if event is None:
                results.append(IngestItemResult(index=index, accepted=False, reason=reason))
                EVENTS_REJECTED.labels(reason=reason).inc()
                continue

            if experiment:
                self._tag_experiment(event, experiment, variant)
            results.append(None)
            valid.append(event)
            valid_positions.append(index)

        stored: List[EngagementEvent] = []
        if valid:
            stored = await self.store.append(valid, now_ms(self.clock))
            EVENTS_INGESTED.inc(len(stored))

        for position, event in zip(valid_positions, stored):
            results[position] = IngestItemResult(index=position, accepted=True, event_id=event.id)

        result = IngestResult(items=results)
        if result.rejected:
            logger.info(
                f"Ingested {len(result.accepted)} event(s), rejected {len(result.rejected)}: "
                f"{sorted({item.reason for item in result.rejected})}"
            )
        else:
            logger.debug(f"Ingested {len(result.accepted)} event(s)")
        return result

    @staticmethod
    def _tag_experiment(event: EngagementEventIn, experiment: str, variant: Optional[str]) -> None:
        event.metadata["experiment"] = experiment
        if variant is None:
            seed = event.profile_id or event.session_id
            if seed is None:
                return
            variant = assign_variant(experiment, seed).variant
        event.metadata["variant"] = variant

    async def get_events(self, event_ids: Iterable[int]) -> List[EngagementEvent]:
        """Stored events for the given ids; unknown ids are skipped."""
        return await self.store.get(event_ids)
