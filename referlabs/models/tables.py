"""
Database models: the "truth layer."

Design principles:
  - referral_events is append-only (no updates/deletes)
  - campaign_messages is the outbound queue; status moves
    queued → sending → sent/delivered/failed and never back to queued
  - Ids are string UUIDs so rows line up with the auth provider's user ids
"""

from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Entity tables
# ---------------------------------------------------------------------------

class Business(Base):
    __tablename__ = "businesses"

    id = Column(String(36), primary_key=True, default=_uuid)
    owner_id = Column(String(64), nullable=False, index=True)   # auth provider user id
    name = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Customer(Base):
    """A business's customer. Customers with a referral_code act as ambassadors."""
    __tablename__ = "customers"

    id = Column(String(36), primary_key=True, default=_uuid)
    business_id = Column(String(36), ForeignKey("businesses.id"), nullable=False, index=True)
    name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    referral_code = Column(String(64), nullable=True, index=True)
    credits = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    business = relationship("Business")


class Referral(Base):
    __tablename__ = "referrals"

    id = Column(String(36), primary_key=True, default=_uuid)
    business_id = Column(String(36), ForeignKey("businesses.id"), nullable=False, index=True)
    ambassador_id = Column(String(36), ForeignKey("customers.id"), nullable=True, index=True)
    referred_name = Column(String(255), nullable=True)
    referred_email = Column(String(255), nullable=True)
    referred_phone = Column(String(50), nullable=True)
    status = Column(String(20), default="pending", nullable=False)   # pending, completed
    consent_given = Column(Boolean, default=False)
    locale = Column(String(10), default="en")
    metadata_ = Column("metadata", JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Campaign(Base):
    __tablename__ = "campaigns"

    id = Column(String(36), primary_key=True, default=_uuid)
    business_id = Column(String(36), ForeignKey("businesses.id"), nullable=False, index=True)
    name = Column(String(255), nullable=True)
    status = Column(String(20), default="queued")   # queued, sending, completed, partial
    sent_count = Column(Integer, default=0, nullable=False)
    failed_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class CampaignMessage(Base):
    """One outbound SMS/email. The dispatch runner claims rows out of `queued`."""
    __tablename__ = "campaign_messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    campaign_id = Column(String(36), ForeignKey("campaigns.id"), nullable=False)
    business_id = Column(String(36), ForeignKey("businesses.id"), nullable=False)
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=True)

    channel = Column(String(10), nullable=False)                  # sms, email
    to_address = Column(String(255), nullable=True)
    referral_link = Column(Text, nullable=True)
    message_body = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSONType, nullable=True)       # email_subject, reply_to, sender_name

    status = Column(String(20), default="queued", nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    error = Column(Text, nullable=True)
    provider_message_id = Column(String(255), nullable=True, index=True)

    scheduled_at = Column(DateTime(timezone=True), nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    campaign = relationship("Campaign")
    business = relationship("Business")

    __table_args__ = (
        Index("ix_campaign_messages_queue", "status", "created_at"),
        Index("ix_campaign_messages_campaign_status", "campaign_id", "status"),
    )


# ---------------------------------------------------------------------------
# Event tables (append-only)
# ---------------------------------------------------------------------------

class ReferralEvent(Base):
    """Audit/analytics fact. Never read back to drive control flow."""
    __tablename__ = "referral_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    business_id = Column(String(36), nullable=False, index=True)
    ambassador_id = Column(String(36), nullable=True, index=True)   # null for anonymous events
    referral_id = Column(String(36), nullable=True)
    event_type = Column(String(50), nullable=False)
    source = Column(String(255), nullable=True)
    device = Column(String(20), nullable=True)
    metadata_ = Column("metadata", JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_referral_events_business_created", "business_id", "created_at"),
    )
