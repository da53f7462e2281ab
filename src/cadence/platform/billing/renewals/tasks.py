"""
Celery tasks for the periodic billing passes.

Each task is a thin synchronous wrapper that runs the async pass to
completion and returns its tally.
"""

import asyncio
from typing import Any

import structlog
from celery import shared_task

from cadence.platform.billing.renewals.orchestrator import RenewalOrchestrator

logger = structlog.get_logger(__name__)


async def _run_renewals_impl() -> dict[str, Any]:
    result = await RenewalOrchestrator().run_renewals()
    return result.as_dict()


async def _run_trial_conversions_impl() -> dict[str, Any]:
    result = await RenewalOrchestrator().run_trial_conversions()
    return result.as_dict()


async def _run_payment_retries_impl() -> dict[str, Any]:
    result = await RenewalOrchestrator().run_payment_retries()
    return result.as_dict()


async def _run_invoice_cleanup_impl() -> dict[str, Any]:
    result = await RenewalOrchestrator().run_invoice_cleanup()
    return result.as_dict()


@shared_task(name="billing.run_renewals")
def run_renewals_task() -> dict[str, Any]:
    """Renew subscriptions whose billing period is ending."""
    logger.info("billing.renewals.started")
    return asyncio.run(_run_renewals_impl())


@shared_task(name="billing.run_trial_conversions")
def run_trial_conversions_task() -> dict[str, Any]:
    """Convert ended trials into paid subscriptions."""
    logger.info("billing.trial_conversions.started")
    return asyncio.run(_run_trial_conversions_impl())


@shared_task(name="billing.run_payment_retries")
def run_payment_retries_task() -> dict[str, Any]:
    """Retry failed payments that are due."""
    logger.info("billing.payment_retries.started")
    return asyncio.run(_run_payment_retries_impl())


@shared_task(name="billing.run_invoice_cleanup")
def run_invoice_cleanup_task() -> dict[str, Any]:
    """Mark long-overdue invoices uncollectible."""
    logger.info("billing.invoice_cleanup.started")
    return asyncio.run(_run_invoice_cleanup_impl())


__all__ = [
    "run_renewals_task",
    "run_trial_conversions_task",
    "run_payment_retries_task",
    "run_invoice_cleanup_task",
]
