"""
Idempotent handlers for the transcode and email queues.

Delivery is at-least-once, so a handler can see the same job more than
once (retry after a partial failure, stalled-job recovery, manual retry).
Both handlers record every finished unit of work (a rendition, a
recipient) in an IdempotencyLedger scoped to the job and skip those units
when the job comes back.

The actual work is delegated to injected collaborators:
    transcoder(source_key, rendition, height, payload) -> output info
    mailer(to, subject, html, name) -> None
Either may be a plain function or a coroutine function.
"""

import inspect
import logging
from typing import Any, Callable, Dict, List

from config import EMAIL_QUEUE, RENDITION_HEIGHTS, TRANSCODE_QUEUE
from errors import EmailDeliveryError, UnrecoverableJobError
from models import Job
from storage import IdempotencyLedger

logger = logging.getLogger(__name__)


async def _call(func: Callable, *args) -> Any:
    result = func(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def _ledger_scope(queue_name: str, job: Job) -> str:
    return f"{queue_name}:{job.id}"


# ============================================================================
# TRANSCODE
# ============================================================================


def validate_transcode_payload(payload: Any) -> Dict[str, Any]:
    """
    Check a transcode payload: {uploadJobId, key, renditions, titleId?, episodeId?}.

    Raises:
        UnrecoverableJobError: the payload can never succeed
    """
    if not isinstance(payload, dict):
        raise UnrecoverableJobError("transcode payload must be an object")
    if payload.get("uploadJobId") in (None, ""):
        raise UnrecoverableJobError("transcode payload is missing uploadJobId")
    if not isinstance(payload.get("key"), str) or not payload["key"]:
        raise UnrecoverableJobError("transcode payload is missing the source key")

    renditions = payload.get("renditions")
    if not isinstance(renditions, list) or not renditions:
        raise UnrecoverableJobError("transcode payload has no renditions")
    unknown = [r for r in renditions if r not in RENDITION_HEIGHTS]
    if unknown:
        raise UnrecoverableJobError(f"unknown renditions: {unknown}")
    return payload


class TranscodeHandler:
    """
    Produce every requested rendition of an uploaded source.

    Args:
        transcoder: Collaborator producing one rendition
        ledger: IdempotencyLedger remembering finished renditions per job
    """

    def __init__(self, transcoder: Callable, ledger: IdempotencyLedger):
        self.transcoder = transcoder
        self.ledger = ledger

    async def __call__(self, payload: Any, job: Job) -> Dict[str, Any]:
        payload = validate_transcode_payload(payload)
        scope = _ledger_scope(TRANSCODE_QUEUE, job)
        done = await self.ledger.done_items(scope)

        outputs: Dict[str, Any] = {}
        skipped: List[str] = []
        # dict.fromkeys keeps request order and drops repeated renditions
        for rendition in dict.fromkeys(payload["renditions"]):
            if rendition in done:
                skipped.append(rendition)
                continue

            height = RENDITION_HEIGHTS[rendition]
            logger.info(f"Transcoding upload {payload['uploadJobId']} to {rendition} ({height}p)")
            outputs[rendition] = await _call(self.transcoder, payload["key"], rendition, height, payload)
            await self.ledger.mark_done(scope, rendition)

        if skipped:
            logger.info(f"Job {job.id}: renditions already produced, skipped {skipped}")

        return {
            "uploadJobId": payload["uploadJobId"],
            "renditions": outputs,
            "skipped": skipped,
        }


# ============================================================================
# EMAIL
# ============================================================================


def validate_email_payload(payload: Any) -> Dict[str, Any]:
    """
    Check an email payload: {subject, html, recipients: [{email, name?}]}.

    Raises:
        UnrecoverableJobError: the payload can never succeed
    """
    if not isinstance(payload, dict):
        raise UnrecoverableJobError("email payload must be an object")
    if not isinstance(payload.get("subject"), str) or not isinstance(payload.get("html"), str):
        raise UnrecoverableJobError("email payload needs a subject and html body")

    recipients = payload.get("recipients")
    if not isinstance(recipients, list) or not recipients:
        raise UnrecoverableJobError("email payload has no recipients")
    for recipient in recipients:
        if not isinstance(recipient, dict) or not recipient.get("email"):
            raise UnrecoverableJobError(f"invalid recipient: {recipient!r}")
    return payload


class EmailHandler:
    """
    Send one message to each recipient of a bulk email job.

    Recipients that fail are collected; if any failed the attempt raises
    EmailDeliveryError so the queue retries, and recipients that already
    received the message are skipped on the retry.

    Args:
        mailer: Collaborator sending one message
        ledger: IdempotencyLedger remembering delivered recipients per job
    """

    def __init__(self, mailer: Callable, ledger: IdempotencyLedger):
        self.mailer = mailer
        self.ledger = ledger

    async def __call__(self, payload: Any, job: Job) -> Dict[str, Any]:
        payload = validate_email_payload(payload)
        scope = _ledger_scope(EMAIL_QUEUE, job)
        done = await self.ledger.done_items(scope)

        sent: List[str] = []
        skipped: List[str] = []
        failed: List[Dict[str, str]] = []

        for recipient in payload["recipients"]:
            email = recipient["email"]
            if email in done:
                skipped.append(email)
                continue
            try:
                await _call(self.mailer, email, payload["subject"], payload["html"], recipient.get("name"))
            except Exception as e:
                logger.warning(f"Job {job.id}: delivery to {email} failed: {e}")
                failed.append({"email": email, "error": str(e) or type(e).__name__})
                continue

            await self.ledger.mark_done(scope, email)
            done.add(email)
            sent.append(email)

        if failed:
            raise EmailDeliveryError(failed)

        logger.info(f"Job {job.id}: sent {len(sent)} email(s), skipped {len(skipped)}")
        return {
            "queued": len(sent),
            "skipped": len(skipped),
            "failed": 0,
            "queuedRecipients": sent,
        }
