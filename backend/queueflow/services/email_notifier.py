"""
Customer email notifications.
Sends welcome and manager messages through an HTTP email API.
"""
import asyncio
import html
import logging
from dataclasses import dataclass
from typing import Awaitable, Optional, Set

import aiohttp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenNotificationPayload:
    """Plain data handed over after a successful enqueue."""
    customer_email: str
    customer_name: str
    queue_name: str
    position: int
    estimated_wait: str
    token_number: Optional[str] = None


class EmailNotificationService:
    """
    Delivery is fire-and-forget from the caller's point of view: every send
    returns a bool and logs failures, nothing is raised to the queue engine.
    Without an API URL configured the service runs in simulation mode and only
    logs what it would have sent.
    """

    REQUEST_TIMEOUT_SECONDS = 10

    def __init__(self, api_url: Optional[str] = None, api_key: Optional[str] = None,
                 sender: str = "no-reply@queueflow.local"):
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self._background_tasks: Set[asyncio.Task] = set()

    @property
    def simulation_mode(self) -> bool:
        return not self.api_url

    # ═══════════════════════════════════════════════════════════════════════════
    # MESSAGE BUILDERS
    # ═══════════════════════════════════════════════════════════════════════════

    def _build_welcome_text(self, payload: TokenNotificationPayload) -> str:
        lines = [
            f"Hi {payload.customer_name},",
            "",
            f"You have joined the queue \"{payload.queue_name}\".",
        ]
        if payload.token_number:
            lines.append(f"Your token: {payload.token_number}")
        lines.extend([
            f"Your position: {payload.position}",
            f"Estimated wait: {payload.estimated_wait}",
            "",
            "We'll let you know when it's your turn.",
        ])
        return "\n".join(lines)

    def _build_message_text(self, customer_name: str, manager_name: str, message: str, queue_name: str) -> str:
        return "\n".join([
            f"Hi {customer_name},",
            "",
            f"{manager_name} from \"{queue_name}\" sent you a message:",
            "",
            message,
        ])

    def _to_html(self, text: str) -> str:
        return "<br>".join(html.escape(line) for line in text.split("\n"))

    # ═══════════════════════════════════════════════════════════════════════════
    # PUBLIC API
    # ═══════════════════════════════════════════════════════════════════════════

    async def send_welcome_email(self, payload: TokenNotificationPayload) -> bool:
        subject = f"You're in line at {payload.queue_name}"
        if payload.token_number:
            subject = f"{subject} ({payload.token_number})"
        return await self._send_email(payload.customer_email, subject, self._build_welcome_text(payload))

    async def send_queue_message(
        self,
        customer_email: str,
        customer_name: str,
        manager_name: str,
        message: str,
        queue_name: str,
    ) -> bool:
        subject = f"Message from {queue_name}"
        text = self._build_message_text(customer_name, manager_name, message, queue_name)
        return await self._send_email(customer_email, subject, text)

    def fire_and_forget(self, send: Awaitable[bool], description: str) -> asyncio.Task:
        """
        Run a send in the background. The task is referenced until it finishes
        so it is not garbage collected mid-flight.
        """
        task = asyncio.ensure_future(send)
        self._background_tasks.add(task)

        def _done(t: asyncio.Task):
            self._background_tasks.discard(t)
            if t.cancelled():
                logger.warning(f"Email task cancelled: {description}")
            elif t.exception() is not None:
                logger.error(f"Email task failed: {description}: {t.exception()}")

        task.add_done_callback(_done)
        return task

    async def wait_for_pending(self):
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def _send_email(self, to: str, subject: str, text: str) -> bool:
        if self.simulation_mode:
            logger.info(f"[SIMULATION] Would send email to={to} subject={subject!r}")
            return True

        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        data = {
            "from": self.sender,
            "to": to,
            "subject": subject,
            "text": text,
            "html": self._to_html(text),
        }

        try:
            timeout = aiohttp.ClientTimeout(total=self.REQUEST_TIMEOUT_SECONDS)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.api_url, json=data, headers=headers) as response:
                    if 200 <= response.status < 300:
                        logger.info(f"Sent email to={to} subject={subject!r}")
                        return True
                    error_text = await response.text()
                    logger.error(f"Failed to send email to={to}: {response.status} - {error_text}")
                    return False
        except Exception as e:
            logger.error(f"Error sending email to={to}: {e}")
            return False
