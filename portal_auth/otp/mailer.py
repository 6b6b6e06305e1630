from __future__ import annotations

from typing import Protocol

import httpx

from portal_auth.logging import get_logger

logger = get_logger("mail")


class MailSender(Protocol):
    def send(self, recipient: str, subject: str, body: str) -> bool:
        ...


class HttpMailSender:
    """Delivers plain-text mail through an HTTP relay that accepts JSON."""

    ACCEPTED_STATUS = {200, 201, 202}

    def __init__(
        self,
        api_url: str,
        api_token: str | None,
        from_address: str,
        http_client: httpx.Client | None = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self.api_url = api_url
        self.from_address = from_address
        self._owns_client = http_client is None
        self.client = http_client or httpx.Client(headers=headers, timeout=httpx.Timeout(timeout_seconds))
        if http_client is not None:
            self.client.headers.update(headers)

    def send(self, recipient: str, subject: str, body: str) -> bool:
        payload = {"from": self.from_address, "to": recipient, "subject": subject, "text": body}
        try:
            response = self.client.post(self.api_url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("Mail relay request failed: %s", exc.__class__.__name__)
            return False
        if response.status_code not in self.ACCEPTED_STATUS:
            logger.warning("Mail relay rejected message status=%s", response.status_code)
            return False
        return True

    def close(self) -> None:
        if self._owns_client:
            self.client.close()
