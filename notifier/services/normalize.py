from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any
from urllib.parse import urlparse

FALLBACK_MESSAGE = "New Jira event"


@dataclass(frozen=True, slots=True)
class NotificationJob:
    source: str
    recipient_email: str
    message: str
    url: str | None = None
    external_event_id: str | None = None

    def to_inputs(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_inputs(cls, inputs: dict[str, Any]) -> "NotificationJob":
        return cls(
            source=_as_text(inputs.get("source")) or "",
            recipient_email=_as_text(inputs.get("recipient_email")) or "",
            message=_as_text(inputs.get("message")) or "",
            url=_as_text(inputs.get("url")),
            external_event_id=_as_text(inputs.get("external_event_id")),
        )


Normalizer = Callable[[Any], list[NotificationJob]]


def is_valid_email(value: Any) -> bool:
    """Permissive shape check: something before an ``@`` and a dot in the domain."""
    if not isinstance(value, str):
        return False
    local, separator, domain = value.strip().rpartition("@")
    if not separator or not local:
        return False
    head, dot, tail = domain.rpartition(".")
    return bool(dot and head and tail)


def normalize_jira_issue(payload: Any) -> list[NotificationJob]:
    """Map a Jira issue webhook to at most one job for the assignee."""
    issue = _as_dict(_as_dict(payload).get("issue"))
    fields = _as_dict(issue.get("fields"))
    assignee = _as_dict(fields.get("assignee"))

    key = _as_text(issue.get("key"))
    summary = _as_text(fields.get("summary"))
    email = _as_text(assignee.get("emailAddress"))
    if not is_valid_email(email):
        return []

    if key and summary:
        message = f"[{key}] {summary}"
    else:
        message = summary or key or FALLBACK_MESSAGE

    return [
        NotificationJob(
            source="jira",
            recipient_email=email,
            message=message,
            url=_jira_browse_url(_as_text(issue.get("self")), key),
            external_event_id=_as_text(issue.get("id")),
        )
    ]


NORMALIZERS: dict[str, Normalizer] = {
    "jira": normalize_jira_issue,
}


def _jira_browse_url(self_url: str | None, key: str | None) -> str | None:
    if not self_url or not key:
        return None
    parsed = urlparse(self_url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}/browse/{key}"


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_text(value: Any) -> str | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None
