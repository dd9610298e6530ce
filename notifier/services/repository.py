from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from functools import lru_cache
from typing import TYPE_CHECKING, Any

import asyncpg  # type: ignore[import-untyped]

from notifier.core.config import get_settings

if TYPE_CHECKING:
    from notifier.services.queue import RetryPolicy


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class PendingLinkState(str, Enum):
    PENDING = "PENDING"
    EXPIRED = "EXPIRED"
    LOCKED = "LOCKED"
    USED = "USED"


@dataclass(slots=True)
class PendingLinkRecord:
    id: int
    email: str
    channel_id: str
    otp_hash: str
    salt: str
    expires_at: datetime
    attempts: int
    max_attempts: int
    state: PendingLinkState
    created_at: datetime


@dataclass(frozen=True, slots=True)
class TransitionResult:
    applied: bool
    state: PendingLinkState | None
    attempts: int | None


OPS_VISIBLE_JOB_STATUSES = {"failed", "discarded"}

_PENDING_LINK_COLUMNS = """
  id,
  email,
  channel_id,
  otp_hash,
  salt,
  expires_at,
  attempts,
  max_attempts,
  state::text as state,
  created_at
"""

_JOB_COLUMNS = """
  id::text as id,
  kind,
  inputs_json,
  status::text as status,
  attempt,
  max_attempts,
  error_json,
  updated_at
"""


class PostgresRepository:
    """Link state and delivery queue persistence over one asyncpg pool."""

    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int = 1,
        max_pool_size: int = 5,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # Link state

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
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                # A fresh code supersedes any code still live for the same pair.
                await conn.execute(
                    """
                    update pending_links
                    set state = 'EXPIRED', updated_at = now()
                    where email = $1 and channel_id = $2 and state = 'PENDING'
                    """,
                    email,
                    channel_id,
                )
                row = await conn.fetchrow(
                    f"""
                    insert into pending_links (email, channel_id, otp_hash, salt, expires_at, max_attempts, state)
                    values ($1, $2, $3, $4, now() + $5::interval, $6, 'PENDING')
                    returning {_PENDING_LINK_COLUMNS}
                    """,
                    email,
                    channel_id,
                    otp_hash,
                    salt,
                    ttl,
                    max_attempts,
                )
        return self._pending_link_from_row(row)

    async def load_active_pending_link(self, email: str, channel_id: str) -> PendingLinkRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_PENDING_LINK_COLUMNS}
            from pending_links
            where email = $1 and channel_id = $2 and state = 'PENDING'
            order by id desc
            limit 1
            """,
            email,
            channel_id,
        )
        return self._pending_link_from_row(row) if row else None

    async def load_latest_pending_link(self, email: str, channel_id: str) -> PendingLinkRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_PENDING_LINK_COLUMNS}
            from pending_links
            where email = $1 and channel_id = $2
            order by id desc
            limit 1
            """,
            email,
            channel_id,
        )
        return self._pending_link_from_row(row) if row else None

    async def transition_pending_link(
        self,
        pending_id: int,
        *,
        from_state: PendingLinkState,
        to_state: PendingLinkState,
        attempts_delta: int = 0,
    ) -> TransitionResult:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            update pending_links
            set
              attempts = attempts + $4,
              state = case
                when $3::pending_link_state = 'PENDING' and attempts + $4 >= max_attempts
                  then 'LOCKED'::pending_link_state
                else $3::pending_link_state
              end,
              updated_at = now()
            where id = $1 and state = $2::pending_link_state
            returning state::text as state, attempts
            """,
            pending_id,
            from_state.value,
            to_state.value,
            attempts_delta,
        )
        if row is None:
            return TransitionResult(applied=False, state=None, attempts=None)
        return TransitionResult(
            applied=True,
            state=PendingLinkState(row["state"]),
            attempts=int(row["attempts"]),
        )

    async def commit_verification(self, *, pending_id: int, email: str, channel_id: str) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                used = await conn.fetchval(
                    """
                    update pending_links
                    set state = 'USED', updated_at = now()
                    where id = $1 and state = 'PENDING' and email = $2 and channel_id = $3
                    returning id
                    """,
                    pending_id,
                    email,
                    channel_id,
                )
                if used is None:
                    raise RepositoryConflictError("pending link is no longer pending")
                await conn.execute(
                    """
                    insert into linked_identities (email, channel_id, verified)
                    values ($1, $2, true)
                    on conflict (email) do update
                    set channel_id = excluded.channel_id, verified = true, updated_at = now()
                    """,
                    email,
                    channel_id,
                )

    async def resolve_channel(self, email: str) -> str | None:
        pool = await self._get_pool()
        return await pool.fetchval(
            """
            select channel_id
            from linked_identities
            where email = $1 and verified = true
            """,
            email,
        )

    # Delivery queue

    async def enqueue_job(
        self,
        *,
        inputs: dict[str, Any],
        max_attempts: int,
        dedupe_key: str | None = None,
    ) -> str:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            job_id = await conn.fetchval(
                """
                insert into notify_jobs (kind, inputs_json, max_attempts, dedupe_key, next_run_at)
                values ('notify', $1::jsonb, $2, $3, now())
                on conflict (dedupe_key) where dedupe_key is not null do nothing
                returning id::text
                """,
                json.dumps(inputs),
                max_attempts,
                dedupe_key,
            )
            if job_id is None:
                job_id = await conn.fetchval(
                    "select id::text from notify_jobs where dedupe_key = $1",
                    dedupe_key,
                )
            if job_id is None:
                raise RepositoryConflictError("job was pruned while being enqueued")
            return job_id

    async def claim_jobs(self, *, limit: int, lease_seconds: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 100))
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with runnable as (
                      select id
                      from notify_jobs
                      where status = 'queued' and next_run_at <= now()
                      order by next_run_at asc, created_at asc
                      limit $1
                      for update skip locked
                    )
                    update notify_jobs j
                    set
                      status = 'claimed',
                      locked_at = now(),
                      lease_expires_at = now() + ($2::int * interval '1 second'),
                      attempt = j.attempt + 1,
                      updated_at = now()
                    from runnable r
                    where j.id = r.id
                    returning
                      j.id::text as id,
                      j.kind,
                      j.inputs_json,
                      j.status::text as status,
                      j.attempt,
                      j.max_attempts,
                      j.error_json,
                      j.updated_at
                    """,
                    bounded_limit,
                    lease_seconds,
                )
        return [self._job_row_to_dict(row) for row in rows]

    async def complete_job(self, job_id: str, *, attempt: int, keep_completed: int) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                updated = await conn.fetchval(
                    """
                    update notify_jobs
                    set
                      status = 'done',
                      error_json = null,
                      locked_at = null,
                      lease_expires_at = null,
                      updated_at = now()
                    where id = $1::uuid and status = 'claimed' and attempt = $2
                    returning id
                    """,
                    job_id,
                    attempt,
                )
                if updated is None:
                    return False
                await conn.execute(
                    """
                    delete from notify_jobs
                    where id in (
                      select id
                      from notify_jobs
                      where status = 'done'
                      order by updated_at desc
                      offset $1
                    )
                    """,
                    max(0, keep_completed),
                )
                return True

    async def retry_or_fail_job(
        self,
        job_id: str,
        *,
        attempt: int,
        error: dict[str, Any],
        policy: RetryPolicy,
    ) -> str | None:
        """Re-queue a failed attempt with backoff, or mark it failed once attempts run out.

        Returns the resolved status, or None when the claim was no longer held.
        """
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                claimed = await conn.fetchrow(
                    """
                    select attempt, max_attempts
                    from notify_jobs
                    where id = $1::uuid and status = 'claimed' and attempt = $2
                    for update
                    """,
                    job_id,
                    attempt,
                )
                if claimed is None:
                    return None

                max_attempts = int(claimed["max_attempts"])
                retry_delay_seconds: float | None = None
                if attempt >= max_attempts:
                    resolved_status = "failed"
                else:
                    resolved_status = "queued"
                    retry_delay_seconds = policy.delay_for_attempt(attempt)

                await conn.execute(
                    """
                    update notify_jobs
                    set
                      status = $2::notify_job_status,
                      error_json = $3::jsonb,
                      locked_at = null,
                      lease_expires_at = null,
                      next_run_at = case
                        when $4::float8 is null then next_run_at
                        else now() + ($4::float8 * interval '1 second')
                      end,
                      updated_at = now()
                    where id = $1::uuid
                    """,
                    job_id,
                    resolved_status,
                    json.dumps(
                        {
                            **error,
                            "attempt": attempt,
                            "max_attempts": max_attempts,
                            "retry_delay_seconds": retry_delay_seconds,
                        }
                    ),
                    retry_delay_seconds,
                )
                return resolved_status

    async def discard_job(self, job_id: str, *, attempt: int, error: dict[str, Any]) -> bool:
        pool = await self._get_pool()
        updated = await pool.fetchval(
            """
            update notify_jobs
            set
              status = 'discarded',
              error_json = $3::jsonb,
              locked_at = null,
              lease_expires_at = null,
              updated_at = now()
            where id = $1::uuid and status = 'claimed' and attempt = $2
            returning id
            """,
            job_id,
            attempt,
            json.dumps({**error, "attempt": attempt}),
        )
        return updated is not None

    async def requeue_expired_claimed_jobs(self, limit: int) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with expired as (
                      select id
                      from notify_jobs
                      where status = 'claimed'
                        and lease_expires_at is not null
                        and lease_expires_at <= now()
                      order by lease_expires_at asc
                      limit $1
                      for update skip locked
                    )
                    update notify_jobs j
                    set
                      status = case
                        when j.attempt >= j.max_attempts then 'failed'::notify_job_status
                        else 'queued'::notify_job_status
                      end,
                      error_json = jsonb_build_object('reason', 'lease expired', 'attempt', j.attempt),
                      locked_at = null,
                      lease_expires_at = null,
                      next_run_at = now(),
                      updated_at = now()
                    from expired e
                    where j.id = e.id
                    returning j.id
                    """,
                    bounded_limit,
                )
                return len(rows)

    async def list_jobs(self, *, status: str, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from notify_jobs
            where status = $1::notify_job_status
            order by updated_at desc
            limit $2
            """,
            status,
            max(1, min(limit, 500)),
        )
        return [self._job_row_to_dict(row) for row in rows]

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("NOTIFIER_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _pending_link_from_row(row: asyncpg.Record) -> PendingLinkRecord:
        return PendingLinkRecord(
            id=int(row["id"]),
            email=row["email"],
            channel_id=row["channel_id"],
            otp_hash=row["otp_hash"],
            salt=row["salt"],
            expires_at=row["expires_at"],
            attempts=int(row["attempts"]),
            max_attempts=int(row["max_attempts"]),
            state=PendingLinkState(row["state"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _job_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "kind": row["kind"],
            "inputs_json": _coerce_json_dict(row["inputs_json"]),
            "status": row["status"],
            "attempt": int(row["attempt"]),
            "max_attempts": int(row["max_attempts"]),
            "error_json": _coerce_json_dict(row["error_json"]) if row["error_json"] is not None else None,
            "updated_at": row["updated_at"],
        }


def _coerce_json_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return {}
    return value if isinstance(value, dict) else {}


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
