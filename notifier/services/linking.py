"""One-time-code linking of an email address to a chat channel.

A link request stores only a salted hash of a fresh six-digit code and mails the code out
of band. Verification walks one pending row through PENDING -> {EXPIRED, LOCKED, USED};
every write is a conditional transition so concurrent submissions for the same code
cannot both win.
"""

from __future__ import annotations

import hashlib
import logging
import re
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Protocol

from fastapi import Depends

from notifier.core.config import Settings, get_settings
from notifier.services.mailer import CodeMailer, get_mailer
from notifier.services.normalize import is_valid_email
from notifier.services.repository import (
    PendingLinkRecord,
    PendingLinkState,
    RepositoryConflictError,
    TransitionResult,
    get_repository,
)

logger = logging.getLogger(__name__)

CODE_DIGITS = 6
_CODE_RE = re.compile(r"^[0-9]{6}$")
_CHANNEL_ID_RE = re.compile(r"^-?[0-9]{1,20}$")


class LinkFailure(str, Enum):
    NO_PENDING_REQUEST = "no pending request"
    EXPIRED = "expired"
    LOCKED = "locked"
    INVALID_CODE = "invalid code"
    INVALID_INPUT = "invalid input"


@dataclass(frozen=True, slots=True)
class LinkOutcome:
    ok: bool
    failure: LinkFailure | None = None

    def __post_init__(self) -> None:
        if self.ok == (self.failure is not None):
            raise ValueError("an outcome is either ok or carries a failure reason")

    @classmethod
    def success(cls) -> "LinkOutcome":
        return cls(ok=True)

    @classmethod
    def fail(cls, failure: LinkFailure) -> "LinkOutcome":
        return cls(ok=False, failure=failure)


class LinkStore(Protocol):
    async def create_pending_link(
        self,
        *,
        email: str,
        channel_id: str,
        otp_hash: str,
        salt: str,
        ttl: timedelta,
        max_attempts: int,
    ) -> PendingLinkRecord: ...

    async def load_active_pending_link(self, email: str, channel_id: str) -> PendingLinkRecord | None: ...

    async def load_latest_pending_link(self, email: str, channel_id: str) -> PendingLinkRecord | None: ...

    async def transition_pending_link(
        self,
        pending_id: int,
        *,
        from_state: PendingLinkState,
        to_state: PendingLinkState,
        attempts_delta: int = 0,
    ) -> TransitionResult: ...

    async def commit_verification(self, *, pending_id: int, email: str, channel_id: str) -> None: ...


def generate_code() -> str:
    return f"{secrets.randbelow(10**CODE_DIGITS):0{CODE_DIGITS}d}"


def generate_salt() -> str:
    return secrets.token_hex(8)


def hash_code(code: str, salt: str) -> str:
    return hashlib.sha256(f"{code}{salt}".encode("utf-8")).hexdigest()


def normalize_email(value: Any) -> str | None:
    if not isinstance(value, str) or not is_valid_email(value):
        return None
    return value.strip().casefold()


def normalize_channel_id(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        value = str(value)
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value if _CHANNEL_ID_RE.match(value) else None


def normalize_code(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value if _CODE_RE.match(value) else None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LinkingService:
    def __init__(
        self,
        store: LinkStore,
        mailer: CodeMailer,
        *,
        ttl: timedelta = timedelta(minutes=10),
        max_attempts: int = 5,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.mailer = mailer
        self.ttl = ttl
        self.max_attempts = max(1, max_attempts)
        self.clock = clock

    async def request_link(self, email: Any, channel_id: Any) -> LinkOutcome:
        normalized_email = normalize_email(email)
        normalized_channel = normalize_channel_id(channel_id)
        if not normalized_email or not normalized_channel:
            return LinkOutcome.fail(LinkFailure.INVALID_INPUT)

        code = generate_code()
        salt = generate_salt()
        # Mail before storing: an SMTP failure must leave any earlier live code usable.
        await self.mailer.send_code(
            to_address=email.strip(),
            code=code,
            ttl_minutes=int(self.ttl.total_seconds() // 60),
        )
        pending = await self.store.create_pending_link(
            email=normalized_email,
            channel_id=normalized_channel,
            otp_hash=hash_code(code, salt),
            salt=salt,
            ttl=self.ttl,
            max_attempts=self.max_attempts,
        )
        logger.info("link code issued pending_id=%s channel_id=%s", pending.id, normalized_channel)
        return LinkOutcome.success()

    async def verify(self, email: Any, channel_id: Any, code: Any) -> LinkOutcome:
        normalized_email = normalize_email(email)
        normalized_channel = normalize_channel_id(channel_id)
        normalized_code = normalize_code(code)
        if not normalized_email or not normalized_channel or not normalized_code:
            return LinkOutcome.fail(LinkFailure.INVALID_INPUT)

        pending = await self.store.load_active_pending_link(normalized_email, normalized_channel)
        if pending is None:
            return LinkOutcome.fail(await self._closed_reason(normalized_email, normalized_channel))

        if self.clock() > pending.expires_at:
            await self._transition(pending, PendingLinkState.EXPIRED)
            return LinkOutcome.fail(LinkFailure.EXPIRED)

        if pending.attempts >= pending.max_attempts:
            await self._transition(pending, PendingLinkState.LOCKED)
            return LinkOutcome.fail(LinkFailure.LOCKED)

        if hash_code(normalized_code, pending.salt) != pending.otp_hash:
            result = await self._transition(pending, PendingLinkState.PENDING, attempts_delta=1)
            if result.applied and result.state is PendingLinkState.LOCKED:
                logger.warning("pending link locked pending_id=%s attempts=%s", pending.id, result.attempts)
            return LinkOutcome.fail(LinkFailure.INVALID_CODE)

        try:
            await self.store.commit_verification(
                pending_id=pending.id,
                email=normalized_email,
                channel_id=normalized_channel,
            )
        except RepositoryConflictError:
            logger.info("verification lost race pending_id=%s", pending.id)
            return LinkOutcome.fail(await self._closed_reason(normalized_email, normalized_channel))

        logger.info("identity linked pending_id=%s channel_id=%s", pending.id, normalized_channel)
        return LinkOutcome.success()

    async def _transition(
        self,
        pending: PendingLinkRecord,
        to_state: PendingLinkState,
        *,
        attempts_delta: int = 0,
    ) -> TransitionResult:
        result = await self.store.transition_pending_link(
            pending.id,
            from_state=PendingLinkState.PENDING,
            to_state=to_state,
            attempts_delta=attempts_delta,
        )
        if not result.applied:
            logger.info("pending link transition conflict pending_id=%s to_state=%s", pending.id, to_state.value)
        return result

    async def _closed_reason(self, email: str, channel_id: str) -> LinkFailure:
        latest = await self.store.load_latest_pending_link(email, channel_id)
        if latest is None:
            return LinkFailure.NO_PENDING_REQUEST
        if latest.state is PendingLinkState.LOCKED:
            return LinkFailure.LOCKED
        if latest.state is PendingLinkState.EXPIRED:
            return LinkFailure.EXPIRED
        return LinkFailure.NO_PENDING_REQUEST


def get_linking_service(
    repository=Depends(get_repository),
    mailer=Depends(get_mailer),
    settings: Settings = Depends(get_settings),
) -> LinkingService:
    return LinkingService(
        repository,
        mailer,
        ttl=timedelta(minutes=settings.otp_ttl_minutes),
        max_attempts=settings.otp_max_attempts,
    )

