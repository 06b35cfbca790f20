"""Fire-and-forget email dispatch.

Messages are posted as JSON to the configured email API. Delivery runs in a
background task with its own retry/backoff; a failed send is logged and never
propagates to the operation that requested it.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass

import httpx

from pcs.config import Settings, get_settings

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    body: str
    kind: str = "generic"


def celebration_email(to: str, school_name: str, round_number: int, certificate_url: str | None) -> EmailMessage:
    lines = [
        f"Congratulations {school_name}!",
        "",
        f"You have completed all three stages (Inspire, Investigate, Act) in Round {round_number}.",
    ]
    if certificate_url:
        lines += ["", f"Download your certificate: {certificate_url}"]
    return EmailMessage(
        to=to, subject=f"Round {round_number} complete: you are Plastic Clever!",
        body="\n".join(lines), kind="round_complete",
    )


def evidence_approved_email(to: str, school_name: str, evidence_title: str) -> EmailMessage:
    return EmailMessage(
        to=to, subject="Your evidence has been approved",
        body=f"Great news! The evidence \"{evidence_title}\" submitted for {school_name} has been approved.",
        kind="evidence_approved",
    )


def evidence_rejected_email(to: str, school_name: str, evidence_title: str, notes: str | None) -> EmailMessage:
    feedback = notes or "Please review and resubmit"
    return EmailMessage(
        to=to, subject="Your evidence needs changes",
        body=(
            f"The evidence \"{evidence_title}\" submitted for {school_name} was not approved.\n\n"
            f"Reviewer feedback: {feedback}"
        ),
        kind="evidence_rejected",
    )


class Notifier:
    """Schedules email deliveries on the running event loop."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._tasks: set[asyncio.Task] = set()

    def send(self, message: EmailMessage) -> None:
        """Queue *message* for delivery and return immediately."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.warning("No running event loop; dropping %s email to %s", message.kind, message.to)
            return
        task = loop.create_task(self._run(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for all in-flight deliveries to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(self, message: EmailMessage) -> bool:
        try:
            return await self.deliver(message)
        except Exception:
            log.exception("Unexpected failure sending %s email to %s", message.kind, message.to)
            return False

    async def deliver(self, message: EmailMessage) -> bool:
        """Post *message* to the email API, retrying with exponential backoff."""
        url = self.settings.email_api_url
        if not url:
            log.info("Email API not configured; skipping %s email to %s", message.kind, message.to)
            return False

        headers = {"Content-Type": "application/json"}
        if self.settings.email_api_key:
            headers["Authorization"] = f"Bearer {self.settings.email_api_key}"
        payload = {"from": self.settings.email_from, **asdict(message)}

        attempts = max(1, self.settings.notify_max_attempts)
        delay = self.settings.notify_backoff_seconds
        for attempt in range(1, attempts + 1):
            try:
                async with httpx.AsyncClient(timeout=self.settings.notify_timeout_seconds) as client:
                    resp = await client.post(url, json=payload, headers=headers)
                    resp.raise_for_status()
                log.info("Sent %s email to %s", message.kind, message.to)
                return True
            except httpx.HTTPError as exc:
                if attempt == attempts:
                    log.error("Giving up on %s email to %s after %d attempts: %s",
                              message.kind, message.to, attempts, exc)
                    return False
                log.warning("Email send failed (attempt %d/%d), retrying in %.1fs: %s",
                            attempt, attempts, delay, exc)
                await asyncio.sleep(delay)
                delay *= 2
        return False


_default: Notifier | None = None


def get_notifier() -> Notifier:
    global _default
    if _default is None:
        _default = Notifier()
    return _default
