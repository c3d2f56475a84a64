"""CLI entrypoint for the billing backend."""
from __future__ import annotations

import logging
import sys

from pydantic import ValidationError

from .api import create_app, run_api
from .config import BillingSettings
from .fast_ledger import FastLedger
from .ledger import DurableLedger
from .notifications import ConnectionRegistry, Notifier
from .service import BillingService


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s:%(lineno)d | %(message)s",
        stream=sys.stdout,
    )


def build_service(settings: BillingSettings, registry: ConnectionRegistry) -> BillingService:
    fast_ledger = FastLedger.from_settings(settings)
    ledger = DurableLedger.from_url(settings.database_url)
    notifier = Notifier(registry, max_queue=settings.notification_queue_size)
    return BillingService(settings, fast_ledger, ledger, notifier=notifier)


def main() -> None:
    try:
        settings = BillingSettings()
    except ValidationError as exc:
        configure_logging()
        logging.getLogger(__name__).error("Invalid billing configuration: %s", exc)
        raise SystemExit(2) from exc

    configure_logging(settings.log_level)
    logger = logging.getLogger(__name__)
    logger.info("Starting billing backend")

    registry = ConnectionRegistry()
    service = build_service(settings, registry)
    service.start_background()
    logger.info(
        "Settlement every %ss, stale sessions reclaimed after %ss",
        settings.settlement_interval_seconds,
        settings.heartbeat_timeout_seconds,
    )

    app = create_app(service, settings, registry)
    logger.info("HTTP API available at http://%s:%s", settings.api_host, settings.api_port)
    try:
        run_api(app, settings)
    finally:
        service.shutdown()
        logger.info("Billing backend stopped")


if __name__ == "__main__":
    main()
