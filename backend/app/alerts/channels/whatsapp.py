"""
whatsapp.py — WhatsApp / SMS delivery channel via the Twilio Messages API.

Delivery mechanism:
    • HTTP POST (form-encoded, basic auth) to
      https://api.twilio.com/2010-04-01/Accounts/{SID}/Messages.json
    • WhatsApp addresses carry the `whatsapp:` prefix; plain SMS uses the
      bare E.164 number (WHATSAPP_USE_SMS=true)
    • Twilio answers 201 with the message SID, or 4xx/5xx with
      {"code": ..., "message": ...}

═══════════════════════════════════════════════════════════════════════════
MESSAGE FORMAT
═══════════════════════════════════════════════════════════════════════════

    *{title}*

    {body}

WhatsApp renders *…* as bold; SMS shows the asterisks literally, which
is acceptable for an emergency notice.

═══════════════════════════════════════════════════════════════════════════
REPORTER TEMPLATES
═══════════════════════════════════════════════════════════════════════════

    sos_received  — acknowledgement right after the report is filed
    sos_approved  — the report was approved and nearby users are alerted
    sos_reviewed  — the report was reviewed with a non-approval decision
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Dict, Mapping, Optional

import httpx

from backend.app.alerts.channels.base import ChannelAdapter, _mask
from backend.app.alerts.models import AlertChannel, ChannelMessage, DeliveryOutcome

logger = logging.getLogger(__name__)

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"

_E164 = re.compile(r"^\+[1-9]\d{6,14}$")

REPORTER_TEMPLATES: Dict[str, ChannelMessage] = {
    "sos_received": ChannelMessage(
        title="SOS received",
        body=(
            "Hi {user_name}, your SOS report {sos_id} has been received. "
            "Our team is reviewing it now (usually {review_time})."
        ),
    ),
    "sos_approved": ChannelMessage(
        title="SOS approved",
        body=(
            "Hi {user_name}, your SOS report {sos_id} has been approved. "
            "Nearby users are being alerted. Stay safe."
        ),
    ),
    "sos_reviewed": ChannelMessage(
        title="SOS reviewed",
        body=(
            "Hi {user_name}, your SOS report {sos_id} has been reviewed "
            "(decision: {decision}). Thank you for reporting."
        ),
    ),
}


def format_whatsapp_body(message: ChannelMessage) -> str:
    if message.title:
        return f"*{message.title}*\n\n{message.body}"
    return message.body


def render_template(template_name: str, parameters: Mapping[str, str]) -> ChannelMessage:
    """Fill a reporter template. Unknown names raise ValueError."""
    template = REPORTER_TEMPLATES.get(template_name)
    if template is None:
        raise ValueError(f"Unsupported template: {template_name}")
    try:
        body = template.body.format(**parameters)
    except KeyError as exc:
        raise ValueError(f"Template {template_name} missing parameter {exc}") from exc
    return ChannelMessage(title=template.title, body=body, data={"template": template_name})


class TwilioWhatsAppAdapter(ChannelAdapter):
    """Twilio-backed WhatsApp (or SMS) channel."""

    channel = AlertChannel.WHATSAPP

    def __init__(
        self,
        *,
        provider: str = "simulation",
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        use_sms: bool = False,
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 15.0,
    ) -> None:
        if provider not in ("simulation", "twilio"):
            raise ValueError(f"Unknown WhatsApp provider: {provider}")
        if provider == "twilio" and not (account_sid and auth_token and from_number):
            raise ValueError("Twilio provider requires account SID, auth token and from number")
        self.provider = provider
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.use_sms = use_sms
        self.timeout_seconds = timeout_seconds
        self._http_client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
            self._owns_client = True
        return self._http_client

    async def aclose(self) -> None:
        if self._owns_client and self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    def _address(self, number: str) -> str:
        return number if self.use_sms else f"whatsapp:{number}"

    async def send(self, channel_id: str, message: ChannelMessage) -> DeliveryOutcome:
        message.validate()
        if not channel_id:
            raise ValueError("Phone number must not be empty")

        phone = channel_id.replace(" ", "")
        if not _E164.match(phone):
            logger.warning("[WHATSAPP] Invalid phone number %s", _mask(phone))
            return DeliveryOutcome.failed(f"Invalid phone number: {_mask(phone)}")

        body = format_whatsapp_body(message)

        if self.provider == "simulation":
            logger.info(
                "[WHATSAPP] (simulated) → %s: %d chars → '%s'",
                _mask(phone), len(body),
                body[:80] + ("..." if len(body) > 80 else ""),
            )
            return DeliveryOutcome.ok(f"sim-wa-{uuid.uuid4().hex[:12]}")

        return await self._send_twilio(phone, body)

    async def _send_twilio(self, phone: str, body: str) -> DeliveryOutcome:
        url = TWILIO_MESSAGES_URL.format(sid=self.account_sid)
        form = {
            "From": self._address(self.from_number),
            "To": self._address(phone),
            "Body": body,
        }
        try:
            client = await self._get_client()
            response = await client.post(
                url,
                data=form,
                auth=(self.account_sid, self.auth_token),
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as exc:
            logger.error("[WHATSAPP] Transport error for %s: %s", _mask(phone), exc)
            return DeliveryOutcome.failed(f"Transport error: {exc}")

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code >= 400:
            error = payload.get("message") or f"HTTP {response.status_code}"
            code = payload.get("code")
            logger.warning(
                "[WHATSAPP] Twilio rejected message to %s: %s (code=%s)",
                _mask(phone), error, code,
            )
            return DeliveryOutcome.failed(f"{error} (code={code})" if code else error)

        sid = payload.get("sid")
        logger.info("[WHATSAPP] Sent to %s (sid=%s)", _mask(phone), sid)
        return DeliveryOutcome.ok(sid)

    async def send_template(
        self,
        phone: str,
        template_name: str,
        parameters: Mapping[str, str],
    ) -> DeliveryOutcome:
        """Send one of the reporter notification templates."""
        return await self.send(phone, render_template(template_name, parameters))
