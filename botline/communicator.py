"""Outbound delivery to agent callback URLs with retries."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx

from botline.errors import DeliveryError

logger = logging.getLogger("botline.communicator")

USER_AGENT = "Botline/1.0"
SECRET_HEADER = "X-Agent-Secret"


class AgentCommunicator:
    """Posts JSON payloads to agents, retrying failed attempts.

    Two retry policies are available: send_to_agent() waits
    ``retry_delay * n`` before the n-th retry, send_with_backoff() waits
    ``retry_delay * 2 ** (n - 1)``. Non-2xx responses, timeouts and transport
    errors all count as failed attempts.
    """

    def __init__(
        self,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _post(self, url: str, payload: Any, headers: Optional[dict]) -> Any:
        response = await self._get_client().post(
            url,
            json=payload,
            timeout=self.timeout,
            headers={
                "Content-Type": "application/json",
                "User-Agent": USER_AGENT,
                **(headers or {}),
            },
        )
        response.raise_for_status()
        try:
            return response.json()
        except ValueError:
            return response.text

    async def _deliver(
        self,
        url: str,
        payload: Any,
        retries: int,
        headers: Optional[dict],
        delay_for: Callable[[int], float],
    ) -> Any:
        retries = max(retries, 0)
        attempts = retries + 1
        for attempt in range(attempts):
            if attempt > 0:
                wait = delay_for(attempt)
                logger.info("delivery_retry url=%s attempt=%d wait=%.2fs", url, attempt, wait)
                await self._sleep(wait)
            try:
                result = await self._post(url, payload, headers)
            except httpx.HTTPError as e:
                logger.warning(
                    "delivery_failed url=%s attempt=%d/%d error=%s",
                    url, attempt + 1, attempts, e,
                )
                if attempt == retries:
                    logger.error("delivery_exhausted url=%s attempts=%d", url, attempts)
                    raise DeliveryError(url, attempts, str(e)) from e
                continue
            logger.info("delivered url=%s attempt=%d", url, attempt + 1)
            return result

    async def send_to_agent(
        self,
        url: str,
        payload: Any,
        retries: Optional[int] = None,
        headers: Optional[dict] = None,
    ) -> Any:
        """Deliver ``payload`` with linear backoff.

        Args:
            url: Agent callback URL
            payload: JSON-serializable body
            retries: Retries after the first attempt (default: max_retries)
            headers: Extra request headers

        Returns:
            Decoded JSON response, or the response text

        Raises:
            DeliveryError: After every attempt failed
        """
        if retries is None:
            retries = self.max_retries
        return await self._deliver(url, payload, retries, headers, lambda n: self.retry_delay * n)

    async def send_with_backoff(
        self,
        url: str,
        payload: Any,
        max_retries: Optional[int] = None,
        headers: Optional[dict] = None,
    ) -> Any:
        """Deliver ``payload`` with exponential backoff between attempts."""
        if max_retries is None:
            max_retries = self.max_retries
        return await self._deliver(
            url, payload, max_retries, headers, lambda n: self.retry_delay * 2 ** (n - 1)
        )

    async def send_reply(
        self,
        url: str,
        reply: str,
        username: Optional[str] = None,
        secret: Optional[str] = None,
    ) -> Any:
        """Deliver a user's reply to an agent (the bridge /reply contract)."""
        payload = {
            "from": username or "User",
            "reply": reply,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        headers = {SECRET_HEADER: secret} if secret else {}
        return await self.send_to_agent(url, payload, headers=headers)

    async def notify_user(self, url: str, message: str, from_agent: Optional[str] = None) -> Any:
        """Deliver a notification on behalf of ``from_agent``."""
        payload = {
            "from": from_agent or "Botline",
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return await self.send_to_agent(url, payload)
