"""
Celery application configuration.

Hosts the billing worker and schedules the periodic billing passes through
Celery beat.
"""

from typing import Any

from celery import Celery
from kombu import Queue

from cadence.platform.logging import setup_logging
from cadence.platform.settings import settings

INVOICE_CLEANUP_INTERVAL_SECONDS = 86400.0

# Create Celery application
celery_app = Celery(
    "cadence_billing",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=["cadence.platform.billing.renewals.tasks"],
)

# Configure Celery settings
celery_app.conf.update(
    task_routes={
        "billing.*": {"queue": "billing"},
    },
    task_default_queue="default",
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("billing", routing_key="billing"),
    ),
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    result_expires=3600,
    task_track_started=True,
    task_time_limit=1800,
    task_soft_time_limit=1500,
    # One pass at a time per worker process
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,
)


@celery_app.on_after_configure.connect  # type: ignore[misc]
def configure_worker_logging(sender: Any, **kwargs: Any) -> None:
    """Configure structlog for worker processes."""
    setup_logging()


@celery_app.on_after_finalize.connect  # type: ignore[misc]
def setup_periodic_tasks(sender: Any, **kwargs: Any) -> None:
    """Register the billing passes with Celery beat."""
    from cadence.platform.billing.renewals.tasks import (
        run_invoice_cleanup_task,
        run_payment_retries_task,
        run_renewals_task,
        run_trial_conversions_task,
    )

    sender.add_periodic_task(
        settings.celery.renewal_interval_seconds,
        run_renewals_task.s(),
        name="billing-run-renewals",
    )
    sender.add_periodic_task(
        settings.celery.trial_conversion_interval_seconds,
        run_trial_conversions_task.s(),
        name="billing-run-trial-conversions",
    )
    sender.add_periodic_task(
        settings.celery.payment_retry_interval_seconds,
        run_payment_retries_task.s(),
        name="billing-run-payment-retries",
    )
    sender.add_periodic_task(
        INVOICE_CLEANUP_INTERVAL_SECONDS,
        run_invoice_cleanup_task.s(),
        name="billing-run-invoice-cleanup",
    )


__all__ = ["celery_app"]
