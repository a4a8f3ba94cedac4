"""Re-run webhook events that were logged but never finished processing.

Events end up here when the per-user reconcile lock was busy (acknowledged as
queued) or when the processor was unavailable and the sender's own retries
ran out.
"""
import argparse
import asyncio
import logging

from slumber_billing.core.config import settings
from slumber_billing.core.errors import ProcessorUnavailable
from slumber_billing.core.logging import setup_logging
from slumber_billing.db.session import SessionLocal
from slumber_billing.services.event_log import get_unprocessed_events, mark_stripe_event_processed
from slumber_billing.services.processor_client import ProcessorClient
from slumber_billing.services.webhook_ingest import WebhookIngest

logger = logging.getLogger(__name__)


def replay_unprocessed_events(db, ingest: WebhookIngest, limit: int = 100) -> dict:
    """Replay up to ``limit`` logged events, oldest first. Returns outcome counts."""
    counts = {}
    for stripe_event in get_unprocessed_events(db, limit=limit):
        data = ((stripe_event.payload or {}).get("data") or {}).get("object")
        if data is None:
            logger.error(f"Logged event {stripe_event.event_id} has no data.object, skipping")
            mark_stripe_event_processed(stripe_event.event_id, db, error_message="Missing data.object")
            counts["skipped"] = counts.get("skipped", 0) + 1
            continue

        try:
            result = ingest.handle_logged_event(stripe_event.event_id, stripe_event.event_type, data)
        except ProcessorUnavailable as e:
            # Later events would hit the same outage
            logger.warning(f"Processor unavailable, stopping replay at event {stripe_event.event_id}: {e}")
            counts["retry"] = counts.get("retry", 0) + 1
            break

        status = result.get("status", "unknown")
        counts[status] = counts.get(status, 0) + 1

    if counts:
        logger.info(f"Event replay finished: {counts}")
    return counts


def _replay_batch(limit: int) -> dict:
    db = SessionLocal()
    try:
        ingest = WebhookIngest(db, ProcessorClient.from_settings())
        return replay_unprocessed_events(db, ingest, limit=limit)
    finally:
        db.close()


async def event_replay_task():
    """Background task that periodically replays queued webhook events"""
    while True:
        await asyncio.sleep(settings.EVENT_REPLAY_INTERVAL)
        try:
            await asyncio.to_thread(_replay_batch, settings.EVENT_REPLAY_BATCH)
        except Exception as e:
            logger.error(f"Error in event replay task: {e}", exc_info=True)


def main():
    parser = argparse.ArgumentParser(description="Replay unprocessed Stripe webhook events")
    parser.add_argument("--limit", type=int, default=settings.EVENT_REPLAY_BATCH)
    args = parser.parse_args()

    setup_logging()
    counts = _replay_batch(args.limit)
    print(counts)


if __name__ == "__main__":
    main()
