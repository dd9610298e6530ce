from __future__ import annotations

import os
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

import pytest

os.environ.setdefault("NOTIFIER_OTEL_ENABLED", "false")

from notifier.services.queue import RetryPolicy  # noqa: E402
from notifier.services.repository import (  # noqa: E402
    PendingLinkRecord,
    PendingLinkState,
    RepositoryConflictError,
    TransitionResult,
)


class FakeClock:
    def __init__(self) -> None:
        self.current = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current = self.current + timedelta(**kwargs)


class InMemoryRepository:
    """Mirrors PostgresRepository semantics, including conditional transitions."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.pending_links: list[PendingLinkRecord] = []
        self.identities: dict[str, dict[str, Any]] = {}
        self.jobs: dict[str, dict[str, Any]] = {}
        self.fail_commit = False
        self.fail_enqueue_for: set[str] = set()

    async def create_pending_link(
        self,
        *,
        email: str,
        channel_id: str,
        otp_hash: str,
        salt: str,
        ttl: timedelta,
        max_attempts: int,
    ) -> PendingLinkRecord:
        for index, row in enumerate(self.pending_links):
            if row.email == email and row.channel_id == channel_id and row.state is PendingLinkState.PENDING:
                self.pending_links[index] = replace(row, state=PendingLinkState.EXPIRED)
        record = PendingLinkRecord(
            id=len(self.pending_links) + 1,
            email=email,
            channel_id=channel_id,
            otp_hash=otp_hash,
            salt=salt,
            expires_at=self.clock() + ttl,
            attempts=0,
            max_attempts=max_attempts,
            state=PendingLinkState.PENDING,
            created_at=self.clock(),
        )
        self.pending_links.append(record)
        return record

    async def load_active_pending_link(self, email: str, channel_id: str) -> PendingLinkRecord | None:
        rows = [
            row
            for row in self.pending_links
            if row.email == email and row.channel_id == channel_id and row.state is PendingLinkState.PENDING
        ]
        return rows[-1] if rows else None

    async def load_latest_pending_link(self, email: str, channel_id: str) -> PendingLinkRecord | None:
        rows = [row for row in self.pending_links if row.email == email and row.channel_id == channel_id]
        return rows[-1] if rows else None

    async def transition_pending_link(
        self,
        pending_id: int,
        *,
        from_state: PendingLinkState,
        to_state: PendingLinkState,
        attempts_delta: int = 0,
    ) -> TransitionResult:
        row = self.get_link(pending_id)
        if row.state is not from_state:
            return TransitionResult(applied=False, state=None, attempts=None)
        attempts = row.attempts + attempts_delta
        state = to_state
        if to_state is PendingLinkState.PENDING and attempts >= row.max_attempts:
            state = PendingLinkState.LOCKED
        self._replace_link(replace(row, attempts=attempts, state=state))
        return TransitionResult(applied=True, state=state, attempts=attempts)

    async def commit_verification(self, *, pending_id: int, email: str, channel_id: str) -> None:
        if self.fail_commit:
            raise ConnectionError("database connection lost")
        row = self.get_link(pending_id)
        if row.state is not PendingLinkState.PENDING or row.email != email or row.channel_id != channel_id:
            raise RepositoryConflictError("pending link is no longer pending")
        self._replace_link(replace(row, state=PendingLinkState.USED))
        self.identities[email] = {"email": email, "channel_id": channel_id, "verified": True}

    async def resolve_channel(self, email: str) -> str | None:
        identity = self.identities.get(email)
        if identity and identity["verified"]:
            return identity["channel_id"]
        return None

    async def enqueue_job(self, *, inputs: dict[str, Any], max_attempts: int, dedupe_key: str | None = None) -> str:
        if inputs.get("recipient_email") in self.fail_enqueue_for:
            raise ConnectionError("queue unavailable")
        if dedupe_key is not None:
            for job in self.jobs.values():
                if job["dedupe_key"] == dedupe_key:
                    return job["id"]
        job_id = str(uuid4())
        self.jobs[job_id] = {
            "id": job_id,
            "kind": "notify",
            "inputs_json": dict(inputs),
            "status": "queued",
            "attempt": 0,
            "max_attempts": max_attempts,
            "next_run_at": self.clock(),
            "lease_expires_at": None,
            "dedupe_key": dedupe_key,
            "error_json": None,
            "updated_at": self.clock(),
        }
        return job_id

    async def claim_jobs(self, *, limit: int, lease_seconds: int) -> list[dict[str, Any]]:
        claimed = []
        for job in self.jobs.values():
            if len(claimed) >= limit:
                break
            if job["status"] == "queued" and job["next_run_at"] <= self.clock():
                job["status"] = "claimed"
                job["attempt"] += 1
                job["lease_expires_at"] = self.clock() + timedelta(seconds=lease_seconds)
                claimed.append(dict(job))
        return claimed

    async def complete_job(self, job_id: str, *, attempt: int, keep_completed: int) -> bool:
        job = self.jobs.get(job_id)
        if not job or job["status"] != "claimed" or job["attempt"] != attempt:
            return False
        job["status"] = "done"
        job["updated_at"] = self.clock()
        done = [item for item in self.jobs.values() if item["status"] == "done"]
        for stale in done[: max(0, len(done) - keep_completed)]:
            del self.jobs[stale["id"]]
        return True

    async def retry_or_fail_job(
        self,
        job_id: str,
        *,
        attempt: int,
        error: dict[str, Any],
        policy: RetryPolicy,
    ) -> str | None:
        job = self.jobs.get(job_id)
        if not job or job["status"] != "claimed" or job["attempt"] != attempt:
            return None
        job["error_json"] = dict(error)
        job["lease_expires_at"] = None
        if attempt >= job["max_attempts"]:
            job["status"] = "failed"
        else:
            job["status"] = "queued"
            job["next_run_at"] = self.clock() + timedelta(seconds=policy.delay_for_attempt(attempt))
        return job["status"]

    async def discard_job(self, job_id: str, *, attempt: int, error: dict[str, Any]) -> bool:
        job = self.jobs.get(job_id)
        if not job or job["status"] != "claimed" or job["attempt"] != attempt:
            return False
        job["status"] = "discarded"
        job["error_json"] = {**error, "attempt": attempt}
        return True

    async def requeue_expired_claimed_jobs(self, limit: int) -> int:
        count = 0
        for job in self.jobs.values():
            if count >= limit:
                break
            if job["status"] == "claimed" and job["lease_expires_at"] <= self.clock():
                job["status"] = "failed" if job["attempt"] >= job["max_attempts"] else "queued"
                job["lease_expires_at"] = None
                job["next_run_at"] = self.clock()
                job["error_json"] = {"reason": "lease expired", "attempt": job["attempt"]}
                count += 1
        return count

    async def list_jobs(self, *, status: str, limit: int) -> list[dict[str, Any]]:
        rows = [job for job in self.jobs.values() if job["status"] == status]
        return rows[:limit]

    async def close(self) -> None:
        return None

    def get_link(self, pending_id: int) -> PendingLinkRecord:
        return next(row for row in self.pending_links if row.id == pending_id)

    def _replace_link(self, record: PendingLinkRecord) -> None:
        self.pending_links = [record if row.id == record.id else row for row in self.pending_links]


class FakeMailer:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail = False

    async def send_code(self, *, to_address: str, code: str, ttl_minutes: int) -> None:
        if self.fail:
            raise OSError("smtp unreachable")
        self.sent.append({"to": to_address, "code": code, "ttl_minutes": ttl_minutes})

    @property
    def last_code(self) -> str:
        return self.sent[-1]["code"]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repository(clock: FakeClock) -> InMemoryRepository:
    return InMemoryRepository(clock)


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()
