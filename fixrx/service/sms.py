from __future__ import annotations

from typing import Optional

import httpx

from fixrx.logging import get_logger

logger = get_logger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


def redact_phone(phone: str) -> str:
    if len(phone) <= 4:
        return "***"
    return f"***{phone[-4:]}"


class SmsService:
    """Text messages through the Twilio REST API.

    Falls back to logging when the account is not configured (dev mode).
    """

    def __init__(
        self,
        *,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    async def send(self, to_phone: str, body: str) -> bool:
        if not self.is_configured:
            logger.info("sms_dev_mode", to=redact_phone(to_phone), length=len(body))
            return True

        url = f"{TWILIO_API_BASE}/Accounts/{self.account_sid}/Messages.json"
        payload = {"From": self.from_number, "To": to_phone, "Body": body}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(
                    url, data=payload, auth=(self.account_sid, self.auth_token)
                )
        except httpx.HTTPError as exc:
            logger.error(
                "sms_send_failed",
                to=redact_phone(to_phone),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if resp.status_code not in (200, 201):
            logger.error(
                "sms_send_rejected",
                to=redact_phone(to_phone),
                status_code=resp.status_code,
            )
            return False
        logger.info("sms_sent", to=redact_phone(to_phone))
        return True

    async def send_verification_code(self, to_phone: str, code: str, brand: str = "FixRx") -> bool:
        return await self.send(
            to_phone, f"Your {brand} verification code is: {code}. Valid for 10 minutes."
        )
