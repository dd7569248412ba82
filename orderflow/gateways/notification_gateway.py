"""
Notification channel and fire-and-forget dispatcher.

The dispatcher never lets a notification failure delay or abort the order
transition that triggered it: sends run as background tasks and errors are
logged.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Set

import httpx

from .exceptions import UpstreamRejected, UpstreamUnavailable
from .gateway_config import is_transient_status
from ..utils.logger import get_logger


logger = get_logger(__name__)


class NotificationGateway(ABC):
    """Abstract notification channel (email, SMS, ...)."""

    @abstractmethod
    async def send(self, to: str, template: str, data: Dict[str, Any]) -> None:
        """
        Deliver one templated message.

        Args:
            to: Recipient address
            template: Template name known to the channel
            data: Template variables
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None


class HttpNotificationGateway(NotificationGateway):
    """Posts templated messages to an email service endpoint."""

    def __init__(
        self,
        endpoint: str,
        api_key: str = "",
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.endpoint = endpoint
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"

    async def close(self) -> None:
        await self._client.aclose()

    async def send(self, to: str, template: str, data: Dict[str, Any]) -> None:
        try:
            response = await self._client.post(
                self.endpoint,
                json={"to": to, "template": {"name": template, "data": data}},
                headers=self._headers
            )
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Notification service unreachable: {e}", provider="notifications")

        if is_transient_status(response.status_code):
            raise UpstreamUnavailable(
                f"Notification service returned {response.status_code}",
                provider="notifications",
                status_code=response.status_code
            )
        if response.status_code >= 400:
            raise UpstreamRejected(
                f"Notification rejected with {response.status_code}",
                provider="notifications",
                status_code=response.status_code
            )


class LoggingNotificationGateway(NotificationGateway):
    """Sandbox channel that only writes the message to the log."""

    async def send(self, to: str, template: str, data: Dict[str, Any]) -> None:
        logger.info("Sandbox notification", to=to, template=template, data=data)


class NotificationDispatcher:
    """
    Best-effort, fire-and-forget notification sender.

    notify() returns immediately; the send runs as a background task with
    its own timeout. Failures are logged and never propagate.
    """

    def __init__(self, gateway: NotificationGateway, timeout_seconds: float = 10.0):
        """
        Initialize dispatcher.

        Args:
            gateway: Notification channel
            timeout_seconds: Per-message deadline
        """
        self.gateway = gateway
        self.timeout_seconds = timeout_seconds
        self._pending: Set[asyncio.Task] = set()

    def notify(self, to: Optional[str], template: str, data: Optional[Dict[str, Any]] = None) -> None:
        """
        Schedule a message. Must be called from a running event loop.

        Args:
            to: Recipient; messages without a recipient are skipped
            template: Template name
            data: Template variables
        """
        if not to:
            logger.debug("Notification skipped, no recipient", template=template)
            return

        task = asyncio.get_running_loop().create_task(self._send(to, template, data or {}))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, to: str, template: str, data: Dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(self.gateway.send(to, template, data), timeout=self.timeout_seconds)
            logger.debug("Notification sent", to=to, template=template)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Notification failed",
                to=to,
                template=template,
                error=str(e),
                error_type=type(e).__name__
            )

    async def drain(self) -> None:
        """Wait for every scheduled notification to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending_count(self) -> int:
        return len(self._pending)
