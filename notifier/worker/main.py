from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import signal
import time
from typing import Any

from opentelemetry import trace

from notifier.core.telemetry import configure_logging, start_telemetry, stop_telemetry
from notifier.services.queue import DeliveryOutcome, DeliveryQueueClient, DeliveryVerdict, RetryPolicy
from notifier.services.repository import PostgresRepository
from notifier.worker.channel_client import TelegramChannelClient
from notifier.worker.config import WorkerSettings, get_worker_settings
from notifier.worker.delivery import ChannelResolver, ChannelSender, deliver

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def build_retry_policy(settings: WorkerSettings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.job_max_attempts,
        backoff_base_seconds=settings.job_retry_base_seconds,
        backoff_max_seconds=settings.job_retry_max_seconds,
        keep_completed=settings.job_keep_completed,
    )


async def process_job(
    job: dict[str, Any],
    *,
    queue: DeliveryQueueClient,
    resolver: ChannelResolver,
    sender: ChannelSender,
) -> str | None:
    with tracer.start_as_current_span("worker.deliver_job") as span:
        span.set_attribute("job.id", job["id"])
        span.set_attribute("job.attempt", job["attempt"])
        try:
            outcome = await deliver(job, resolver=resolver, sender=sender)
        except Exception as exc:
            logger.exception("delivery crashed job_id=%s", job["id"])
            outcome = DeliveryOutcome(DeliveryVerdict.RETRYABLE, f"unexpected error: {type(exc).__name__}")

        span.set_attribute("job.verdict", outcome.verdict.value)
        resolved_status = await queue.record_outcome(job, outcome)
        if resolved_status is None:
            logger.warning("claim lost before outcome was recorded job_id=%s attempt=%s", job["id"], job["attempt"])
        elif resolved_status in {"failed", "discarded"}:
            logger.warning(
                "job dropped job_id=%s attempt=%s status=%s reason=%s",
                job["id"],
                job["attempt"],
                resolved_status,
                outcome.reason,
            )
        else:
            logger.info(
                "job attempt recorded job_id=%s attempt=%s status=%s reason=%s",
                job["id"],
                job["attempt"],
                resolved_status,
                outcome.reason,
            )
        return resolved_status


async def process_batch(
    jobs: list[dict[str, Any]],
    *,
    queue: DeliveryQueueClient,
    resolver: ChannelResolver,
    sender: ChannelSender,
) -> list[str | None]:
    results = await asyncio.gather(
        *(process_job(job, queue=queue, resolver=resolver, sender=sender) for job in jobs),
        return_exceptions=True,
    )
    statuses: list[str | None] = []
    for job, result in zip(jobs, results):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            # The lease reaper re-queues this claim once it expires.
            logger.error("recording outcome failed job_id=%s error=%r", job["id"], result)
            statuses.append(None)
        else:
            statuses.append(result)
    return statuses


async def poll_once(
    queue: DeliveryQueueClient,
    *,
    resolver: ChannelResolver,
    sender: ChannelSender,
    settings: WorkerSettings,
) -> int:
    """Claim up to ``settings.concurrency`` jobs and drive each to a recorded outcome."""
    with tracer.start_as_current_span("worker.poll_cycle") as span:
        jobs = await queue.claim(limit=settings.concurrency, lease_seconds=settings.claim_lease_seconds)
        span.set_attribute("worker.claimed", len(jobs))
        if jobs:
            await process_batch(jobs, queue=queue, resolver=resolver, sender=sender)
        return len(jobs)


def next_backoff(current: float, ceiling: float) -> float:
    return min(current * (2.0 + random.uniform(0.0, 0.5)), ceiling)


async def run_worker(stop_event: asyncio.Event | None = None) -> None:
    settings = get_worker_settings()
    configure_logging(correlate=settings.otel_log_correlation)
    if not settings.telegram_bot_token:
        raise RuntimeError("NOTIFIER_WORKER_TELEGRAM_BOT_TOKEN is required")

    telemetry = start_telemetry(settings, instrument_httpx=True)
    stop = stop_event or asyncio.Event()
    _install_signal_handlers(stop)

    repository = PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
    queue = DeliveryQueueClient(repository, build_retry_policy(settings))
    channel = TelegramChannelClient(
        settings.telegram_bot_token,
        api_base_url=settings.telegram_api_base_url,
        timeout_seconds=settings.send_timeout_seconds,
    )

    backoff = settings.poll_interval_seconds
    reap_due_at = 0.0
    logger.info("notifier worker starting concurrency=%s", settings.concurrency)

    try:
        while not stop.is_set():
            try:
                if time.monotonic() >= reap_due_at:
                    requeued = await queue.reap_expired(limit=settings.lease_reaper_batch_size)
                    if requeued:
                        logger.info("requeued expired leases count=%s", requeued)
                    reap_due_at = time.monotonic() + settings.lease_reaper_interval_seconds

                # A claimed batch runs to completion even if stop is set meanwhile.
                claimed = await poll_once(queue, resolver=repository, sender=channel, settings=settings)
                backoff = settings.poll_interval_seconds
                if not claimed:
                    await _sleep_until_stopped(stop, settings.poll_interval_seconds)
            except Exception:
                backoff = next_backoff(backoff, settings.max_backoff_seconds)
                logger.exception("poll cycle failed; retry in %.1fs", backoff)
                await _sleep_until_stopped(stop, backoff)
    finally:
        logger.info("notifier worker stopping")
        await channel.aclose()
        await repository.close()
        stop_telemetry(telemetry)


async def _sleep_until_stopped(stop: asyncio.Event, seconds: float) -> None:
    with contextlib.suppress(asyncio.TimeoutError):
        await asyncio.wait_for(stop.wait(), timeout=seconds)


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - platform dependent
            logger.debug("signal handlers unavailable for %s", sig)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
