"""E-mail delivery over an HTTP mail API.

Responsibilities:
- POST one message per call to EMAIL_API_URL
- Retry on 5xx / connection errors (3 attempts, exponential backoff)
- Report failures as EmailDeliveryError

Does NOT know about notifications.
"""
import asyncio
import logging

import httpx

from config import settings

logger = logging.getLogger("linewatch.mailer")


class EmailDeliveryError(Exception):
    """Mail API rejected the message."""
    def __init__(self, code: str, message: str):
        self.code = code
        super().__init__(f"[{code}] {message}")


class EmailClient:

    def __init__(
        self,
        api_url: str | None = None,
        api_key: str | None = None,
        sender: str | None = None,
        timeout: float | None = None,
    ):
        self.api_url = (api_url if api_url is not None else settings.EMAIL_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.EMAIL_API_KEY
        self.sender = sender or settings.EMAIL_SENDER
        self._client = httpx.AsyncClient(timeout=timeout or settings.EMAIL_TIMEOUT)

    @property
    def enabled(self) -> bool:
        return bool(self.api_url)

    async def send_email(self, to: str, subject: str, html: str) -> bool:
        """Send one message. False when delivery is disabled."""
        if not self.enabled:
            logger.debug("E-mail delivery disabled, dropping '%s' to %s", subject, to)
            return False

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        body = {"from": self.sender, "to": [to], "subject": subject, "html": html}
        last_exc = None

        for attempt in range(3):
            try:
                resp = await self._client.post(self.api_url, json=body, headers=headers)
                resp.raise_for_status()
                logger.info("E-mail '%s' sent to %s", subject, to)
                return True
            except httpx.HTTPStatusError as exc:
                last_exc = exc
                if exc.response.status_code >= 500:
                    backoff = 2 ** attempt
                    logger.warning(
                        "Mail API HTTP %d, retry %d/3 in %ds",
                        exc.response.status_code, attempt + 1, backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise EmailDeliveryError(str(exc.response.status_code), exc.response.text) from exc
            except (httpx.ConnectError, httpx.TimeoutException) as exc:
                last_exc = exc
                backoff = 2 ** attempt
                logger.warning(
                    "Mail API connection error: %s, retry %d/3 in %ds",
                    exc, attempt + 1, backoff,
                )
                await asyncio.sleep(backoff)

        raise EmailDeliveryError("UNAVAILABLE", f"Mail API failed after 3 attempts: {last_exc}")

    async def close(self) -> None:
        await self._client.aclose()
