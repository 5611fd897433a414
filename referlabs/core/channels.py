"""
Outbound message channels: Twilio for SMS, Resend for email.

Each channel exposes `async send(message) -> provider_message_id`.
Raises ChannelNotConfigured when credentials are missing, and lets provider
errors (httpx.HTTPError and friends) propagate so the dispatch runner can
record them against the single message being sent.
"""

from dataclasses import dataclass

import httpx

from referlabs.config import get_settings
from referlabs.models.tables import CampaignMessage

import structlog

logger = structlog.get_logger()

TWILIO_API_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"
RESEND_API_URL = "https://api.resend.com/emails"
DEFAULT_FROM_EMAIL = "onboarding@resend.dev"


class ChannelNotConfigured(Exception):
    """Provider credentials are missing for this channel."""


@dataclass(frozen=True)
class QueuedMessage:
    """Detached snapshot of a campaign_messages row, taken when the queue is loaded."""
    id: str
    campaign_id: str
    business_id: str
    customer_id: str | None
    channel: str
    to_address: str | None
    message_body: str | None
    referral_link: str | None = None
    metadata: dict | None = None
    attempts: int = 0
    campaign_name: str | None = None
    business_name: str | None = None

    @classmethod
    def from_row(cls, row: CampaignMessage) -> "QueuedMessage":
        return cls(
            id=row.id,
            campaign_id=row.campaign_id,
            business_id=row.business_id,
            customer_id=row.customer_id,
            channel=row.channel,
            to_address=row.to_address,
            message_body=row.message_body,
            referral_link=row.referral_link,
            metadata=dict(row.metadata_ or {}),
            attempts=row.attempts or 0,
            campaign_name=row.campaign.name if row.campaign else None,
            business_name=row.business.name if row.business else None,
        )


class SmsChannel:
    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.transport = transport

    async def send(self, message: QueuedMessage) -> str | None:
        if not (self.account_sid and self.auth_token and self.from_number):
            raise ChannelNotConfigured("Twilio credentials are not configured")

        async with httpx.AsyncClient(transport=self.transport, timeout=15.0) as client:
            resp = await client.post(
                TWILIO_API_URL.format(sid=self.account_sid),
                auth=(self.account_sid, self.auth_token),
                data={
                    "To": message.to_address or "",
                    "From": self.from_number,
                    "Body": message.message_body or "",
                },
            )
        resp.raise_for_status()
        sid = resp.json().get("sid")
        logger.debug("sms_sent", message_id=message.id, provider_message_id=sid)
        return sid


class EmailChannel:
    def __init__(
        self,
        api_key: str,
        from_email: str = "",
        reply_to: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.from_email = (from_email or "").strip() or DEFAULT_FROM_EMAIL
        self.reply_to = (reply_to or "").strip()
        self.transport = transport

    def sender(self, message: QueuedMessage) -> str:
        if "<" in self.from_email and ">" in self.from_email:
            return self.from_email
        meta = message.metadata or {}
        business_name = message.business_name or message.campaign_name or "Refer Labs"
        sender_name = str(meta.get("sender_name") or "").strip() or business_name
        return f"{sender_name} <{self.from_email}>"

    @staticmethod
    def subject(message: QueuedMessage) -> str:
        meta = message.metadata or {}
        return (
            meta.get("email_subject")
            or message.campaign_name
            or message.business_name
            or "Refer Labs"
        )

    async def send(self, message: QueuedMessage) -> str | None:
        if not self.api_key:
            raise ChannelNotConfigured("Resend API key not configured")

        meta = message.metadata or {}
        body = {
            "from": self.sender(message),
            "to": message.to_address or "",
            "subject": self.subject(message),
            "text": message.message_body or "",
        }
        reply_to = str(meta.get("reply_to") or "").strip() or self.reply_to
        if reply_to:
            body["reply_to"] = reply_to

        async with httpx.AsyncClient(transport=self.transport, timeout=15.0) as client:
            resp = await client.post(
                RESEND_API_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json=body,
            )
        resp.raise_for_status()
        email_id = resp.json().get("id")
        logger.debug("email_sent", message_id=message.id, provider_message_id=email_id)
        return email_id


def default_channels(transport: httpx.AsyncBaseTransport | None = None) -> dict:
    """Channel map built from settings, keyed by campaign_messages.channel."""
    settings = get_settings()
    return {
        "sms": SmsChannel(
            settings.twilio_account_sid,
            settings.twilio_auth_token,
            settings.twilio_phone_number,
            transport=transport,
        ),
        "email": EmailChannel(
            settings.resend_api_key,
            settings.resend_from_email,
            settings.resend_reply_to,
            transport=transport,
        ),
    }
