"""SMS service using the Twilio REST API."""
import httpx
from typing import Any

from ..config import get_settings
from .messaging import SendResult

SMS_MAX_LENGTH = 320


def render_sms(template_kind: str, payload: dict[str, Any]) -> str:
    if template_kind == "stop_work_sms":
        on_site = payload.get("on_site_date") or "today"
        body = (
            f"RiskShield STOP WORK RISK: {payload.get('subcontractor_name')} is on site at "
            f"{payload.get('project_name')} ({on_site}) without valid insurance. "
            f"Status: {payload.get('status')}."
        )
    else:
        raise ValueError(f"Unknown SMS template '{template_kind}'")
    return body[:SMS_MAX_LENGTH]


SMS_TEMPLATES = frozenset({"stop_work_sms"})


class SmsService:
    """Service for sending text messages via Twilio."""

    def __init__(self):
        self.settings = get_settings()
        self.account_sid = self.settings.twilio_account_sid
        self.auth_token = self.settings.twilio_auth_token
        self.from_number = self.settings.twilio_phone_number
        self.base_url = "https://api.twilio.com/2010-04-01"

    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    async def send_sms(self, to_number: str, body: str) -> SendResult:
        if not self.is_configured():
            print("[SMS] Twilio not configured, skipping SMS send")
            return SendResult(success=False, error="SMS provider not configured")

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{self.base_url}/Accounts/{self.account_sid}/Messages.json",
                    data={"To": to_number, "From": self.from_number, "Body": body},
                    auth=(self.account_sid, self.auth_token),
                    timeout=30.0,
                )
        except httpx.HTTPError as e:
            print(f"[SMS] Error sending to {to_number}: {e}")
            return SendResult(success=False, error=str(e))

        if response.status_code in (200, 201):
            print(f"[SMS] Sent SMS to {to_number}")
            return SendResult(success=True, id=response.json().get("sid"))

        print(f"[SMS] Failed to send to {to_number}: {response.status_code} - {response.text}")
        return SendResult(success=False, error=f"Twilio returned {response.status_code}")

    async def send_template(self, to_number: str, template_kind: str, payload: dict[str, Any]) -> SendResult:
        return await self.send_sms(to_number, render_sms(template_kind, payload))
