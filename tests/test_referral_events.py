"""Tests for the referral event logger."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from referlabs.core.referral_events import (
    ReferralEventType,
    infer_device_from_user_agent,
    log_referral_event,
)
from referlabs.models.tables import ReferralEvent


def _mock_db():
    db = AsyncMock(spec=["add", "commit", "rollback"])
    db.add = MagicMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    return db


class TestInferDevice:
    @pytest.mark.parametrize("ua,expected", [
        (None, "unknown"),
        ("", "unknown"),
        ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X)", "mobile"),
        ("Mozilla/5.0 (Linux; Android 14; Pixel 8)", "mobile"),
        ("Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X)", "mobile"),
        ("Mozilla/5.0 (Linux; Tablet; rv:109.0)", "tablet"),
        ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0", "desktop"),
    ])
    def test_classification(self, ua, expected):
        assert infer_device_from_user_agent(ua) == expected


class TestLogReferralEvent:
    def test_inserts_row(self):
        db = _mock_db()
        ok = asyncio.run(log_referral_event(
            db,
            business_id="biz-1",
            ambassador_id="amb-1",
            event_type=ReferralEventType.LINK_VISIT,
            source="direct",
            device="mobile",
            metadata={"referrer": None},
        ))
        assert ok is True
        db.add.assert_called_once()
        event = db.add.call_args[0][0]
        assert isinstance(event, ReferralEvent)
        assert event.event_type == "link_visit"
        assert event.business_id == "biz-1"
        assert event.metadata_ == {"referrer": None}
        db.commit.assert_awaited_once()

    def test_accepts_plain_string_type(self):
        db = _mock_db()
        assert asyncio.run(log_referral_event(
            db, business_id="biz-1", ambassador_id=None, event_type="contact_us_clicked",
        )) is True

    def test_commit_failure_is_swallowed(self):
        db = _mock_db()
        db.commit = AsyncMock(side_effect=RuntimeError("connection reset"))
        ok = asyncio.run(log_referral_event(
            db, business_id="biz-1", ambassador_id="amb-1",
            event_type=ReferralEventType.LINK_VISIT,
        ))
        assert ok is False
        db.rollback.assert_awaited_once()

    def test_rollback_failure_is_swallowed(self):
        db = _mock_db()
        db.commit = AsyncMock(side_effect=RuntimeError("boom"))
        db.rollback = AsyncMock(side_effect=RuntimeError("still boom"))
        assert asyncio.run(log_referral_event(
            db, business_id="biz-1", ambassador_id=None,
            event_type=ReferralEventType.LINK_VISIT,
        )) is False

    def test_unknown_event_type_not_inserted(self):
        db = _mock_db()
        ok = asyncio.run(log_referral_event(
            db, business_id="biz-1", ambassador_id=None, event_type="page_scrolled",
        ))
        assert ok is False
        db.add.assert_not_called()

    def test_missing_business_not_inserted(self):
        db = _mock_db()
        ok = asyncio.run(log_referral_event(
            db, business_id=None, ambassador_id="amb-1",
            event_type=ReferralEventType.LINK_VISIT,
        ))
        assert ok is False
        db.add.assert_not_called()


def test_event_vocabulary_is_closed():
    assert len(ReferralEventType) == 15
    assert ReferralEventType("campaign_delivery_batch_finished")
