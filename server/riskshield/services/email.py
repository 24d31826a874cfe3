"""Email service using MailerSend."""
import html
import httpx
from datetime import date
from typing import Any, Optional

from ..config import get_settings
from .messaging import SendResult

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333; }
        .container { max-width: 600px; margin: 0 auto; padding: 20px; }
        .header { text-align: center; padding: 20px 0; border-bottom: 2px solid #0f766e; }
        .logo { color: #0f766e; font-size: 24px; font-weight: bold; letter-spacing: 2px; }
        .content { padding: 30px 0; }
        .card { background: #f9fafb; border-radius: 10px; padding: 20px; margin: 20px 0; }
        .alert { background: #fef2f2; border-left: 4px solid #dc2626; padding: 16px; margin: 20px 0; }
        .btn { display: inline-block; background: #0f766e; color: white; padding: 12px 22px; text-decoration: none; border-radius: 6px; font-weight: 600; }
        table { width: 100%; border-collapse: collapse; }
        td, th { text-align: left; padding: 6px 8px; border-bottom: 1px solid #e5e7eb; font-size: 14px; }
        .footer { text-align: center; padding-top: 20px; border-top: 1px solid #e5e7eb; color: #6b7280; font-size: 12px; }
"""


def _e(value: Any) -> str:
    return html.escape("" if value is None else str(value))


def _format_date(value: Any) -> str:
    if isinstance(value, date):
        return value.strftime("%d %B %Y")
    return _e(value)


def _page(body: str, footer: str = "Sent by RiskShield compliance monitoring") -> str:
    return f"""
<!DOCTYPE html>
<html>
<head>
    <style>{_STYLE}
    </style>
</head>
<body>
    <div class="container">
        <div class="header">
            <div class="logo">RISKSHIELD</div>
        </div>
        <div class="content">
{body}
        </div>
        <div class="footer">
            <p>{_e(footer)}</p>
        </div>
    </div>
</body>
</html>
"""


def _deficiency_list(deficiencies: list[dict]) -> str:
    if not deficiencies:
        return ""
    items = "".join(
        f"<li>{_e(d.get('description') or d.get('message') or d.get('type') or d)}</li>"
        for d in deficiencies
    )
    return f"<ul>{items}</ul>"


def _render_expiration_reminder(payload: dict[str, Any], base_url: str) -> str:
    days = payload.get("days_until_expiry", 0)
    if payload.get("alert_level") == "expired":
        headline = "has <strong>expired</strong>"
    else:
        headline = f"expires in <strong>{_e(days)} days</strong>"
    return _page(f"""
            <p>Hi {_e(payload.get('recipient_name') or payload.get('subcontractor_name'))},</p>
            <p>The Certificate of Currency held for <strong>{_e(payload.get('subcontractor_name'))}</strong>
            on <strong>{_e(payload.get('project_name'))}</strong> {headline}.</p>
            <div class="card">
                <p style="margin: 0;"><strong>Expiry date:</strong> {_format_date(payload.get('expiry_date'))}</p>
            </div>
            <p>Please send an updated certificate so work on site can continue without interruption.</p>
""")


def _render_deficiency(payload: dict[str, Any], base_url: str) -> str:
    reason = payload.get("reason")
    reason_html = f"<p>{_e(reason)}</p>" if reason else ""
    return _page(f"""
            <p>Hi {_e(payload.get('recipient_name') or payload.get('subcontractor_name'))},</p>
            <p>The Certificate of Currency submitted for <strong>{_e(payload.get('project_name'))}</strong>
            does not meet the project's insurance requirements.</p>
            {reason_html}
            <div class="card">{_deficiency_list(payload.get('deficiencies') or [])}</div>
            <p>Please arrange for an updated certificate to be sent in reply to this email.</p>
""")


def _render_follow_up(payload: dict[str, Any], base_url: str) -> str:
    stage = payload.get("stage", 1)
    urgency = {
        1: "This is a friendly reminder",
        2: "This is a second reminder",
        3: "This is a final notice",
    }.get(stage, "This is a reminder")
    return _page(f"""
            <p>Hi {_e(payload.get('recipient_name') or payload.get('subcontractor_name'))},</p>
            <p>{urgency} that we are still waiting on a compliant Certificate of Currency for
            <strong>{_e(payload.get('project_name'))}</strong>. Our request was sent
            {_e(payload.get('days_waiting'))} days ago.</p>
            <div class="card">{_deficiency_list(payload.get('deficiencies') or [])}</div>
            <p>Subcontractors without valid cover may be stopped from working on site.</p>
""")


def _render_stop_work_alert(payload: dict[str, Any], base_url: str) -> str:
    link = f"{base_url}/dashboard/projects/{_e(payload.get('project_id'))}/subcontractors"
    return _page(f"""
            <div class="alert">
                <p style="margin: 0;"><strong>Stop-work risk:</strong> {_e(payload.get('subcontractor_name'))}
                is scheduled on site at <strong>{_e(payload.get('project_name'))}</strong> without valid insurance.</p>
            </div>
            <div class="card">
                <p style="margin: 0;"><strong>On-site date:</strong> {_format_date(payload.get('on_site_date'))}</p>
                <p style="margin: 8px 0 0 0;"><strong>Compliance status:</strong> {_e(payload.get('status'))}</p>
            </div>
            <p><a href="{link}" class="btn">Review Subcontractor</a></p>
""")


def _render_morning_brief(payload: dict[str, Any], base_url: str) -> str:
    brief = payload.get("brief") or {}
    stats = brief.get("stats") or {}
    rate = stats.get("compliance_rate")
    rate_text = f"{rate}%" if rate is not None else "n/a"

    risk_rows = "".join(
        f"<tr><td>{_e(r.get('subcontractor_name'))}</td><td>{_e(r.get('project_name'))}</td>"
        f"<td>{_format_date(r.get('on_site_date'))}</td></tr>"
        for r in brief.get("stop_work_risks", [])
    ) or '<tr><td colspan="3">None</td></tr>'

    response_rows = "".join(
        f"<tr><td>{_e(r.get('subcontractor_name'))}</td><td>{_e(r.get('project_name'))}</td>"
        f"<td>{_e(r.get('days_waiting'))} days</td></tr>"
        for r in brief.get("pending_responses", [])
    ) or '<tr><td colspan="3">None</td></tr>'

    docs = brief.get("document_stats") or {}
    return _page(f"""
            <p>Good morning {_e(payload.get('recipient_name'))},</p>
            <p>Here is today's compliance summary for <strong>{_e(payload.get('company_name'))}</strong>.</p>
            <div class="card">
                <p style="margin: 0;"><strong>Compliance rate:</strong> {rate_text}
                ({_e(stats.get('compliant', 0))} compliant, {_e(stats.get('exception', 0))} on exception,
                {_e(stats.get('total', 0))} total)</p>
                <p style="margin: 8px 0 0 0;"><strong>Active projects:</strong> {_e(stats.get('active_projects', 0))}</p>
                <p style="margin: 8px 0 0 0;"><strong>Awaiting review:</strong> {_e(stats.get('pending_reviews', 0))}</p>
                <p style="margin: 8px 0 0 0;"><strong>Certificates received (24h):</strong> {_e(docs.get('total', 0))}
                ({_e(docs.get('auto_approved', 0))} auto-approved, {_e(docs.get('needs_review', 0))} need review)</p>
            </div>
            <h3>Stop-work risks ({_e(stats.get('stop_work_count', 0))})</h3>
            <table>{risk_rows}</table>
            <h3>Waiting on subcontractors ({_e(stats.get('pending_responses_count', 0))})</h3>
            <table>{response_rows}</table>
            <p><a href="{base_url}/dashboard" class="btn">Open Dashboard</a></p>
""")


_RENDERERS = {
    "expiration_reminder": _render_expiration_reminder,
    "deficiency": _render_deficiency,
    "follow_up": _render_follow_up,
    "stop_work_alert": _render_stop_work_alert,
    "morning_brief": _render_morning_brief,
}

EMAIL_TEMPLATES = frozenset(_RENDERERS)


def render_email(template_kind: str, payload: dict[str, Any], base_url: str = "") -> str:
    renderer = _RENDERERS.get(template_kind)
    if renderer is None:
        raise ValueError(f"Unknown email template '{template_kind}'")
    return renderer(payload, base_url)


class EmailService:
    """Service for sending emails via MailerSend API."""

    def __init__(self):
        self.settings = get_settings()
        self.api_key = self.settings.mailersend_api_key
        self.from_email = self.settings.mailersend_from_email
        self.from_name = self.settings.mailersend_from_name
        self.base_url = "https://api.mailersend.com/v1"

    def is_configured(self) -> bool:
        """Check if email service is properly configured."""
        return bool(self.api_key)

    async def send_email(
        self,
        to_email: str,
        to_name: Optional[str],
        subject: str,
        html_content: str,
        cc: Optional[list[str]] = None,
    ) -> SendResult:
        """Send an email via MailerSend."""
        if not self.is_configured():
            print("[Email] MailerSend not configured, skipping email send")
            return SendResult(success=False, error="Email provider not configured")

        payload: dict[str, Any] = {
            "from": {
                "email": self.from_email,
                "name": self.from_name,
            },
            "to": [
                {
                    "email": to_email,
                    "name": to_name or to_email,
                }
            ],
            "subject": subject,
            "html": html_content,
        }
        if cc:
            payload["cc"] = [{"email": address} for address in cc]

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{self.base_url}/email",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    timeout=30.0,
                )
        except httpx.HTTPError as e:
            print(f"[Email] Error sending to {to_email}: {e}")
            return SendResult(success=False, error=str(e))

        if response.status_code in (200, 201, 202):
            print(f"[Email] Sent email to {to_email}")
            return SendResult(success=True, id=response.headers.get("X-Message-Id"))

        print(f"[Email] Failed to send to {to_email}: {response.status_code} - {response.text}")
        return SendResult(success=False, error=f"MailerSend returned {response.status_code}")

    async def send_template(
        self,
        to_email: str,
        to_name: Optional[str],
        template_kind: str,
        payload: dict[str, Any],
        cc: Optional[list[str]] = None,
    ) -> SendResult:
        subject = payload.get("subject") or "RiskShield compliance notice"
        html_content = render_email(template_kind, payload, self.settings.app_base_url)
        return await self.send_email(to_email, to_name, subject, html_content, cc=cc)
