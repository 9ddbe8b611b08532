"""newsletter_flow.delivery

Outbound email collaborator used by the schedule / deliver / send-test actions.

The status machine only needs two things from delivery: "send this HTML to
these recipients" and "send one test copy".  DeliveryClient is that seam.
PostmarkDeliveryClient talks to the Postmark HTTP API with requests;
NullDeliveryClient records calls for dry runs and tests.

Send readiness is a separate, pluggable check: scheduling and delivery must
not proceed while it reports blockers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

import requests

log = logging.getLogger(__name__)

POSTMARK_API_URL = "https://api.postmarkapp.com"
POSTMARK_BATCH_LIMIT = 500
DEFAULT_MESSAGE_STREAM = "broadcast"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class DeliveryError(RuntimeError):
    """Raised when the delivery provider rejects or cannot accept a send."""


# ---------------------------------------------------------------------------
# Client protocol + implementations
# ---------------------------------------------------------------------------

class DeliveryClient(Protocol):
    def send(self, to: str, subject: str, html: str) -> str:
        """Send one message; return the provider message id."""
        ...

    def send_batch(self, recipients: list[str], subject: str, html: str) -> int:
        """Send one message per recipient; return how many were accepted."""
        ...


@dataclass
class PostmarkDeliveryClient:
    """Postmark HTTP API client.  The server token comes from the environment."""

    server_token: str
    from_address: str
    message_stream: str = DEFAULT_MESSAGE_STREAM
    timeout: int = 30
    session: requests.Session = field(default_factory=requests.Session, repr=False)

    def _headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "X-Postmark-Server-Token": self.server_token,
        }

    def _message(self, to: str, subject: str, html: str) -> dict[str, Any]:
        return {
            "From": self.from_address,
            "To": to,
            "Subject": subject,
            "HtmlBody": html,
            "MessageStream": self.message_stream,
        }

    def _post(self, path: str, payload: Any) -> Any:
        try:
            resp = self.session.post(
                f"{POSTMARK_API_URL}{path}",
                json=payload,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise DeliveryError(f"Postmark request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise DeliveryError(
                f"Postmark returned HTTP {resp.status_code}: {resp.text[:200]}"
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise DeliveryError(
                f"Postmark returned a non-JSON body (HTTP {resp.status_code}): {resp.text[:200]}"
            ) from exc

    def send(self, to: str, subject: str, html: str) -> str:
        data = self._post("/email", self._message(to, subject, html))
        if data.get("ErrorCode", 0) != 0:
            raise DeliveryError(f"Postmark error {data.get('ErrorCode')}: {data.get('Message')}")
        return str(data.get("MessageID", ""))

    def send_batch(self, recipients: list[str], subject: str, html: str) -> int:
        accepted = 0
        for start in range(0, len(recipients), POSTMARK_BATCH_LIMIT):
            chunk = recipients[start:start + POSTMARK_BATCH_LIMIT]
            results = self._post("/email/batch", [self._message(r, subject, html) for r in chunk])
            for result in results:
                if result.get("ErrorCode", 0) == 0:
                    accepted += 1
                else:
                    log.warning(
                        "Postmark rejected %s: %s", result.get("To"), result.get("Message")
                    )
        return accepted


@dataclass
class NullDeliveryClient:
    """No network.  Records every call; optionally fails to exercise error paths."""

    fail_with: str | None = None
    sent: list[tuple[str, str]] = field(default_factory=list)

    def send(self, to: str, subject: str, html: str) -> str:
        if self.fail_with:
            raise DeliveryError(self.fail_with)
        self.sent.append((to, subject))
        return f"null-{len(self.sent)}"

    def send_batch(self, recipients: list[str], subject: str, html: str) -> int:
        if self.fail_with:
            raise DeliveryError(self.fail_with)
        self.sent.extend((r, subject) for r in recipients)
        return len(recipients)


# ---------------------------------------------------------------------------
# Send readiness
# ---------------------------------------------------------------------------

ReadinessCheck = Callable[[dict[str, Any]], list[str]]


def basic_send_readiness(newsletter: dict[str, Any]) -> list[str]:
    """Blockers that prevent scheduling or delivering a newsletter.

    Expects the keys produced by versions.get_newsletter.
    """
    blockers: list[str] = []
    if newsletter.get("status") == "sent":
        blockers.append("Newsletter has already been sent.")
    document = newsletter.get("document_json") or {}
    if not (document.get("html") or "").strip():
        blockers.append("Newsletter has no HTML content.")
    if not (newsletter.get("title") or "").strip():
        blockers.append("Newsletter has no title.")
    return blockers
