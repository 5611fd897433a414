"""Tests for the campaign dispatch batch runner (real SQLite via aiosqlite)."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from referlabs.core import dispatch
from referlabs.core.channels import SmsChannel
from referlabs.core.dispatch import DispatchOptions, run_campaign_dispatch_batch
from referlabs.models.tables import Base, Business, Campaign, CampaignMessage, ReferralEvent


class FakeChannel:
    """Records sends; fails for addresses in `fail_for`."""

    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.sent = []

    async def send(self, message):
        await asyncio.sleep(0)
        if message.to_address in self.fail_for:
            raise RuntimeError(f"provider rejected {message.to_address}")
        self.sent.append(message.id)
        return f"prov-{message.id}"


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}"


async def _setup(db_url):
    engine = create_async_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def _seed(factory, addresses, *, channel="sms", campaign_id="camp-1",
                business_id="biz-1", attempts=0, scheduled_at=None, body="Hi there"):
    async with factory() as db:
        if await db.get(Business, business_id) is None:
            db.add(Business(id=business_id, owner_id="owner-1", name="Bloom Studio"))
        if await db.get(Campaign, campaign_id) is None:
            db.add(Campaign(id=campaign_id, business_id=business_id, name="Spring push"))
        ids = []
        for i, addr in enumerate(addresses):
            msg_id = f"{campaign_id}-m{i}"
            db.add(CampaignMessage(
                id=msg_id,
                campaign_id=campaign_id,
                business_id=business_id,
                channel=channel,
                to_address=addr,
                message_body=body,
                attempts=attempts,
                scheduled_at=scheduled_at,
            ))
            ids.append(msg_id)
        await db.commit()
        return ids


async def _messages(factory, campaign_id="camp-1"):
    async with factory() as db:
        result = await db.execute(
            select(CampaignMessage).where(CampaignMessage.campaign_id == campaign_id)
        )
        return {m.id: m for m in result.scalars().all()}


async def _campaign(factory, campaign_id="camp-1"):
    async with factory() as db:
        return await db.get(Campaign, campaign_id)


async def _event_types(factory):
    async with factory() as db:
        result = await db.execute(select(ReferralEvent.event_type))
        return list(result.scalars().all())


def _run(db_url, scenario):
    async def main():
        engine, factory = await _setup(db_url)
        try:
            return await scenario(factory)
        finally:
            await engine.dispose()
    return asyncio.run(main())


class TestHappyPath:
    def test_sends_all_and_completes_campaign(self, db_url):
        channel = FakeChannel()

        async def scenario(factory):
            ids = await _seed(factory, ["+61400000001", "+61400000002", "+61400000003"])
            result = await run_campaign_dispatch_batch(
                DispatchOptions(batch_size=10), session_factory=factory, channels={"sms": channel},
            )
            return ids, result, await _messages(factory), await _campaign(factory), \
                await _event_types(factory)

        ids, result, messages, campaign, events = _run(db_url, scenario)

        assert (result.processed, result.sent, result.failed, result.skipped) == (3, 3, 0, 0)
        assert result.error is None
        assert sorted(channel.sent) == sorted(ids)
        for m in messages.values():
            assert m.status == "sent"
            assert m.attempts == 1
            assert m.provider_message_id == f"prov-{m.id}"
            assert m.sent_at is not None
        assert campaign.status == "completed"
        assert campaign.sent_count == 3
        assert campaign.failed_count == 0
        assert events.count("campaign_message_sent") == 3
        assert "campaign_delivery_batch_started" in events
        assert "campaign_delivery_batch_finished" in events

    def test_empty_queue(self, db_url):
        async def scenario(factory):
            return await run_campaign_dispatch_batch(session_factory=factory, channels={})

        result = _run(db_url, scenario)
        assert result.to_dict() == {"processed": 0, "sent": 0, "failed": 0, "skipped": 0}


class TestFailureIsolation:
    def test_one_provider_error_does_not_abort_batch(self, db_url):
        channel = FakeChannel(fail_for={"+61400000002"})

        async def scenario(factory):
            await _seed(factory, ["+61400000001", "+61400000002", "+61400000003"])
            result = await run_campaign_dispatch_batch(
                session_factory=factory, channels={"sms": channel},
            )
            return result, await _messages(factory), await _campaign(factory)

        result, messages, campaign = _run(db_url, scenario)

        assert (result.processed, result.sent, result.failed) == (3, 2, 1)
        failed = [m for m in messages.values() if m.status == "failed"]
        assert len(failed) == 1
        assert failed[0].to_address == "+61400000002"
        assert "provider rejected" in failed[0].error
        assert campaign.status == "partial"
        assert campaign.sent_count == 2
        assert campaign.failed_count == 1

    def test_outcome_write_error_mid_batch_fails_only_that_message(self, db_url, monkeypatch):
        channel = FakeChannel()
        original = dispatch._record_outcome

        async def flaky_record(db, message, status, **kwargs):
            if message.to_address == "+61400000002" and status == "sent":
                raise RuntimeError("could not serialize provider id")
            return await original(db, message, status, **kwargs)

        monkeypatch.setattr(dispatch, "_record_outcome", flaky_record)

        async def scenario(factory):
            ids = await _seed(factory, ["+61400000001", "+61400000002", "+61400000003"])
            result = await run_campaign_dispatch_batch(
                session_factory=factory, channels={"sms": channel},
            )
            return ids, result, await _messages(factory), await _campaign(factory)

        ids, result, messages, campaign = _run(db_url, scenario)

        assert result.error is None
        assert (result.processed, result.sent, result.failed) == (3, 2, 1)
        assert sorted(channel.sent) == sorted(ids)
        assert messages[ids[0]].status == "sent"
        assert messages[ids[1]].status == "failed"
        assert "could not serialize provider id" in messages[ids[1]].error
        assert messages[ids[2]].status == "sent"
        assert campaign.status == "partial"
        assert campaign.failed_count == 1

    def test_non_string_provider_id_is_stored_as_text(self, db_url):
        class NumericIdChannel(FakeChannel):
            async def send(self, message):
                await super().send(message)
                return 4711

        channel = NumericIdChannel()

        async def scenario(factory):
            ids = await _seed(factory, ["+61400000001"])
            result = await run_campaign_dispatch_batch(
                session_factory=factory, channels={"sms": channel},
            )
            return ids, result, await _messages(factory)

        ids, result, messages = _run(db_url, scenario)
        assert result.sent == 1
        assert messages[ids[0]].provider_message_id == "4711"

    def test_missing_body_fails_without_provider_call(self, db_url):
        channel = FakeChannel()

        async def scenario(factory):
            await _seed(factory, ["+61400000001"], body=None)
            result = await run_campaign_dispatch_batch(
                session_factory=factory, channels={"sms": channel},
            )
            return result, await _messages(factory)

        result, messages = _run(db_url, scenario)
        assert result.failed == 1
        assert channel.sent == []
        (message,) = messages.values()
        assert message.error == "Missing destination address or message body"

    def test_unsupported_channel(self, db_url):
        async def scenario(factory):
            await _seed(factory, ["fax:123"], channel="fax")
            result = await run_campaign_dispatch_batch(
                session_factory=factory, channels={"sms": FakeChannel()},
            )
            return result, await _messages(factory)

        result, messages = _run(db_url, scenario)
        assert result.failed == 1
        (message,) = messages.values()
        assert message.status == "failed"
        assert message.error == "Unsupported channel: fax"

    def test_unconfigured_channel_fails_message(self, db_url):
        async def scenario(factory):
            await _seed(factory, ["+61400000001"])
            result = await run_campaign_dispatch_batch(
                session_factory=factory, channels={"sms": SmsChannel("", "", "")},
            )
            return result, await _messages(factory)

        result, messages = _run(db_url, scenario)
        assert result.failed == 1
        (message,) = messages.values()
        assert message.error == "Twilio credentials are not configured"


class TestAttemptsAndScheduling:
    def test_exhausted_rows_are_failed_not_sent(self, db_url):
        channel = FakeChannel()

        async def scenario(factory):
            await _seed(factory, ["+61400000001"], attempts=3)
            result = await run_campaign_dispatch_batch(
                session_factory=factory, channels={"sms": channel},
            )
            return result, await _messages(factory), await _campaign(factory)

        result, messages, campaign = _run(db_url, scenario)
        assert result.failed == 1
        assert result.sent == 0
        assert channel.sent == []
        (message,) = messages.values()
        assert message.status == "failed"
        assert message.error == "Max send attempts reached (3)."
        assert campaign.failed_count == 1
        assert campaign.status == "partial"

    def test_future_scheduled_rows_wait(self, db_url):
        channel = FakeChannel()
        later = datetime.now(timezone.utc) + timedelta(hours=2)

        async def scenario(factory):
            await _seed(factory, ["+61400000001"], scheduled_at=later)
            result = await run_campaign_dispatch_batch(
                session_factory=factory, channels={"sms": channel},
            )
            return result, await _messages(factory)

        result, messages = _run(db_url, scenario)
        assert result.processed == 0
        assert all(m.status == "queued" for m in messages.values())

    def test_batch_size_bounds_work(self, db_url):
        channel = FakeChannel()

        async def scenario(factory):
            await _seed(factory, [f"+6140000000{i}" for i in range(5)])
            result = await run_campaign_dispatch_batch(
                DispatchOptions(batch_size=2), session_factory=factory, channels={"sms": channel},
            )
            return result, await _messages(factory), await _campaign(factory)

        result, messages, campaign = _run(db_url, scenario)
        assert result.processed == 2
        assert sum(1 for m in messages.values() if m.status == "queued") == 3
        assert campaign.status == "sending"


class TestScoping:
    def test_restrict_campaign_and_skip_batch_events(self, db_url):
        channel = FakeChannel()

        async def scenario(factory):
            await _seed(factory, ["+61400000001"], campaign_id="camp-1")
            other = await _seed(factory, ["+61400000009"], campaign_id="camp-2")
            result = await run_campaign_dispatch_batch(
                DispatchOptions(restrict_campaign_id="camp-1", skip_batch_events=True),
                session_factory=factory,
                channels={"sms": channel},
            )
            return result, other, await _messages(factory, "camp-2"), await _event_types(factory)

        result, other, camp2, events = _run(db_url, scenario)
        assert result.sent == 1
        assert other[0] not in channel.sent
        assert all(m.status == "queued" for m in camp2.values())
        assert "campaign_delivery_batch_started" not in events
        assert "campaign_delivery_batch_finished" not in events
        assert events == ["campaign_message_sent"]


class TestConcurrency:
    def test_concurrent_batches_never_double_send(self, db_url):
        channel = FakeChannel()

        async def scenario(factory):
            ids = await _seed(factory, [f"+614000000{i:02d}" for i in range(12)])
            results = await asyncio.gather(
                run_campaign_dispatch_batch(session_factory=factory, channels={"sms": channel}),
                run_campaign_dispatch_batch(session_factory=factory, channels={"sms": channel}),
            )
            return ids, results, await _messages(factory)

        ids, results, messages = _run(db_url, scenario)

        assert all(r.error is None for r in results)
        sent_ids = results[0].sent_ids + results[1].sent_ids
        assert len(sent_ids) == len(set(sent_ids))
        assert sorted(sent_ids) == sorted(ids)
        assert sorted(channel.sent) == sorted(ids)
        assert all(m.attempts == 1 for m in messages.values())


class _BrokenSession:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, *args, **kwargs):
        raise RuntimeError("relation campaign_messages does not exist")


def test_queue_load_failure_is_reported():
    result = asyncio.run(run_campaign_dispatch_batch(
        session_factory=lambda: _BrokenSession(), channels={},
    ))
    assert result.error == "Failed to load queued messages."
    assert result.to_dict()["error"] == "Failed to load queued messages."
