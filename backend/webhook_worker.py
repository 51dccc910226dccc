"""Periodic webhook maintenance: due retries and delivery log cleanup.

Run next to the API process::

    python webhook_worker.py
"""
import logging
import time

import config
from database import SessionLocal
from webhook_service import WebhookRepository, WebhookService

logger = logging.getLogger(__name__)

CLEANUP_EVERY_SECONDS = 3600


def run_once(session_factory=SessionLocal, sender=None, cleanup: bool = False) -> int:
    db = session_factory()
    try:
        service = WebhookService(WebhookRepository(db), sender=sender)
        processed = service.process_retry_deliveries(config.WEBHOOK_RETRY_BATCH_SIZE)
        if cleanup:
            service.cleanup_old_deliveries(config.WEBHOOK_DELIVERY_RETENTION_DAYS)
        return processed
    finally:
        db.close()


def main() -> None:
    logging.basicConfig(level=config.LOG_LEVEL)
    logger.info("Webhook worker started interval=%ss", config.WEBHOOK_POLL_INTERVAL_SECONDS)
    last_cleanup = 0.0
    while True:
        now = time.monotonic()
        cleanup = now - last_cleanup >= CLEANUP_EVERY_SECONDS
        try:
            processed = run_once(cleanup=cleanup)
        except Exception:
            logger.exception("Webhook worker iteration failed")
        else:
            if cleanup:
                last_cleanup = now
            if processed:
                logger.info("Processed %s due webhook retries", processed)
        time.sleep(config.WEBHOOK_POLL_INTERVAL_SECONDS)


if __name__ == "__main__":
    main()
