from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from fastapi import Depends

from notifier.core.config import Settings, get_settings
from notifier.services.normalize import NotificationJob
from notifier.services.repository import get_repository

logger = logging.getLogger(__name__)


class DeliveryVerdict(str, Enum):
    COMPLETE = "complete"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


@dataclass(frozen=True, slots=True)
class DeliveryOutcome:
    verdict: DeliveryVerdict
    reason: str
    status_code: int | None = None

    def to_error_json(self) -> dict[str, Any]:
        return {"reason": self.reason, "status_code": self.status_code, "verdict": self.verdict.value}


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 5
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 3600.0
    keep_completed: int = 1000

    def delay_for_attempt(self, attempt: int) -> float:
        """Delay before the attempt that follows ``attempt`` (1-based): 1s, 2s, 4s, ..."""
        if self.backoff_base_seconds <= 0:
            return 0.0
        delay = self.backoff_base_seconds * (2 ** max(0, attempt - 1))
        return min(delay, self.backoff_max_seconds)


@dataclass(slots=True)
class FanoutResult:
    job_ids: list[str] = field(default_factory=list)
    failures: list[BaseException] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.job_ids)


class QueueRepository(Protocol):
    async def enqueue_job(self, *, inputs: dict[str, Any], max_attempts: int, dedupe_key: str | None = None) -> str: ...

    async def complete_job(self, job_id: str, *, attempt: int, keep_completed: int) -> bool: ...

    async def retry_or_fail_job(
        self, job_id: str, *, attempt: int, error: dict[str, Any], policy: RetryPolicy
    ) -> str | None: ...

    async def discard_job(self, job_id: str, *, attempt: int, error: dict[str, Any]) -> bool: ...

    async def claim_jobs(self, *, limit: int, lease_seconds: int) -> list[dict[str, Any]]: ...

    async def requeue_expired_claimed_jobs(self, limit: int) -> int: ...


class DeliveryQueueClient:
    """At-least-once notify queue with bounded retries layered on the jobs table."""

    def __init__(self, repository: QueueRepository, policy: RetryPolicy | None = None) -> None:
        self.repository = repository
        self.policy = policy or RetryPolicy()

    async def enqueue(self, job: NotificationJob, *, dedupe_key: str | None = None) -> str:
        return await self.repository.enqueue_job(
            inputs=job.to_inputs(),
            max_attempts=self.policy.max_attempts,
            dedupe_key=dedupe_key,
        )

    async def enqueue_fanout(self, jobs: list[NotificationJob], *, dedupe_prefix: str | None = None) -> FanoutResult:
        """Enqueue each job on its own; one failed insert never rolls back the others."""
        results = await asyncio.gather(
            *(
                self.enqueue(job, dedupe_key=build_dedupe_key(dedupe_prefix, job) if dedupe_prefix else None)
                for job in jobs
            ),
            return_exceptions=True,
        )
        fanout = FanoutResult()
        for job, result in zip(jobs, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error(
                    "enqueue failed source=%s external_event_id=%s error=%r",
                    job.source,
                    job.external_event_id,
                    result,
                )
                fanout.failures.append(result)
            else:
                fanout.job_ids.append(result)
        return fanout

    async def claim(self, *, limit: int, lease_seconds: int) -> list[dict[str, Any]]:
        return await self.repository.claim_jobs(limit=limit, lease_seconds=lease_seconds)

    async def reap_expired(self, *, limit: int) -> int:
        """Re-queue claims whose lease ran out; exhausted ones are marked failed."""
        return await self.repository.requeue_expired_claimed_jobs(limit)

    async def record_outcome(self, job: dict[str, Any], outcome: DeliveryOutcome) -> str | None:
        """Apply one attempt's verdict; returns the job's resulting status or None for a lost claim."""
        job_id = job["id"]
        attempt = int(job["attempt"])
        if outcome.verdict is DeliveryVerdict.COMPLETE:
            held = await self.repository.complete_job(
                job_id,
                attempt=attempt,
                keep_completed=self.policy.keep_completed,
            )
            return "done" if held else None
        if outcome.verdict is DeliveryVerdict.TERMINAL:
            held = await self.repository.discard_job(job_id, attempt=attempt, error=outcome.to_error_json())
            return "discarded" if held else None
        return await self.repository.retry_or_fail_job(
            job_id,
            attempt=attempt,
            error=outcome.to_error_json(),
            policy=self.policy,
        )


def build_dedupe_key(prefix: str, job: NotificationJob) -> str:
    recipient = job.recipient_email.strip().casefold()
    digest = hashlib.sha256(f"{prefix}|{job.source}|{recipient}".encode("utf-8")).hexdigest()
    return f"{job.source}:{digest[:40]}"


def get_delivery_queue(
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> DeliveryQueueClient:
    return DeliveryQueueClient(
        repository,
        RetryPolicy(
            max_attempts=settings.job_max_attempts,
            backoff_base_seconds=settings.job_retry_base_seconds,
            backoff_max_seconds=settings.job_retry_max_seconds,
            keep_completed=settings.job_keep_completed,
        ),
    )
