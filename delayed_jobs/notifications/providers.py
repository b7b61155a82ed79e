"""Notification providers used by units of work."""

from typing import Any
from uuid import uuid4

import httpx

from delayed_jobs.config.logging import get_logger
from delayed_jobs.config.settings import Settings
from delayed_jobs.core.exceptions import DelayedJobsError

logger = get_logger(__name__)


class NotificationError(DelayedJobsError):
    """Raised when a provider rejects or fails to deliver a message."""

    def __init__(
        self,
        message: str,
        retryable: bool,
        details: dict[str, Any] | None = None,
    ):
        self.retryable = retryable
        super().__init__(message, details)


class LogNotifier:
    """Notifier that only logs messages. Default outside production."""

    def __init__(self):
        self.sent: list[dict[str, str]] = []

    async def send(self, to: str, body: str) -> dict[str, Any]:
        message = {"to": to, "body": body}
        self.sent.append(message)
        logger.info("Notification logged", to=to, length=len(body))
        return {"sid": f"log-{uuid4().hex}", "status": "logged"}


class HttpSmsNotifier:
    """SMS over a Twilio-style REST API (form POST to Accounts/<sid>/Messages.json)."""

    def __init__(
        self,
        api_url: str,
        account_sid: str,
        auth_token: str,
        from_number: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.account_sid = account_sid
        self.from_number = from_number
        self.client = httpx.AsyncClient(
            base_url=self.api_url,
            auth=(account_sid, auth_token),
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpSmsNotifier":
        return cls(
            api_url=settings.sms_api_url,
            account_sid=settings.sms_account_sid,
            auth_token=settings.sms_auth_token,
            from_number=settings.sms_from_number,
            timeout=settings.sms_timeout_s,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def send(self, to: str, body: str) -> dict[str, Any]:
        """Send one SMS. Network errors, 429 and 5xx are retryable."""
        try:
            response = await self.client.post(
                f"/Accounts/{self.account_sid}/Messages.json",
                data={"To": to, "From": self.from_number, "Body": body},
            )
        except httpx.RequestError as e:
            raise NotificationError(
                f"SMS provider unreachable: {e}", retryable=True
            ) from e

        return self._handle_response(response)

    def _handle_response(self, response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code == 429 or response.status_code >= 500:
            raise NotificationError(
                f"SMS provider error {response.status_code}",
                retryable=True,
                details={"response": data},
            )

        if response.status_code >= 400:
            raise NotificationError(
                f"SMS rejected {response.status_code}: {data.get('message', 'unknown error')}",
                retryable=False,
                details={"response": data},
            )

        logger.info("SMS sent", sid=data.get("sid"), status=data.get("status"))
        return data
