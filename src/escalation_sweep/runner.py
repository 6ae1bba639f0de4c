"""
Single-writer scheduler loop for the escalation sweep.

Cycles never overlap: the next cycle starts only after the previous one
finished. An exception in one cycle is logged and the loop carries on.
"""

import asyncio

import structlog

from deal_workflow.clients.notification_client import Notifier, WebhookNotificationSink
from deal_workflow.repository import WorkflowRepository

from .config import SweepSettings, get_settings
from .sweep import EscalationSweep, SweepResult

logger = structlog.get_logger(__name__)


def build_sweep(
    repository: WorkflowRepository,
    settings: SweepSettings | None = None,
) -> EscalationSweep:
    """Wire a sweep with a webhook notifier when a webhook URL is configured."""
    settings = settings or get_settings()
    sink = None
    if settings.NOTIFICATION_WEBHOOK_URL:
        sink = WebhookNotificationSink(
            url=settings.NOTIFICATION_WEBHOOK_URL,
            api_key=settings.NOTIFICATION_API_KEY,
        )
    else:
        logger.warning('sweep.no_notification_sink')
    return EscalationSweep(repository, Notifier(sink), settings=settings)


async def run_periodically(
    sweep: EscalationSweep,
    interval_seconds: float,
    stop_event: asyncio.Event,
    max_cycles: int | None = None,
) -> list[SweepResult]:
    """
    Run sweep cycles until `stop_event` is set (or `max_cycles` is reached).

    Returns:
        Results of the cycles that completed
    """
    results: list[SweepResult] = []
    cycles = 0
    while not stop_event.is_set():
        cycles += 1
        try:
            results.append(await sweep.run())
        except Exception:
            logger.exception('sweep.cycle_failed', cycle=cycles)
        if max_cycles is not None and cycles >= max_cycles:
            break
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
    logger.info('sweep.loop_stopped', cycles=cycles)
    return results
