"""Tests for charging a single pledge."""

import asyncio
import pathlib
import sys
from datetime import datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, select

sys.path.append(str(pathlib.Path(__file__).resolve().parents[2]))

from app.models import (
    Tenant,
    User,
    Fund,
    Pledge,
    PledgeCharge,
    PledgeSettings,
    PledgeFrequency,
    PledgeStatus,
    ChargeStatus,
)
from app.crud import (
    claim_pledge,
    create_tenant,
    get_donations_by_pledge,
    release_pledge_claim,
)
from app.gateway import GatewayResult, PaymentGateway, NO_PAYMENT_METHOD_REASON
from app.notifications import Notifier, NotificationError
from app.pledge_scheduler import (
    process_pledge,
    GATEWAY_TIMEOUT_REASON,
    PLEDGE_BUSY,
    PLEDGE_ENDED,
    PLEDGE_HAS_PENDING_CHARGE,
    PLEDGE_NOT_ACTIVE,
    PLEDGE_NOT_FOUND,
)

NOW = datetime(2025, 2, 15, 12, 0)


class ScriptedGateway(PaymentGateway):
    """Returns queued results in order, repeating the last one."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    async def attempt(self, token, amount_cents, currency):
        self.calls.append((token, amount_cents, currency))
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class SlowGateway(PaymentGateway):
    async def attempt(self, token, amount_cents, currency):
        await asyncio.sleep(5)
        return GatewayResult.approved("txn_late")


class RecordingNotifier(Notifier):
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send(self, to, subject, text_body, html_body):
        if self.fail:
            raise NotificationError("provider down")
        self.sent.append((to, subject, text_body, html_body))


async def _setup_db():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    return async_sessionmaker(engine, expire_on_commit=False)


async def _seed_pledge(Session, max_failures=None, **overrides) -> int:
    async with Session() as session:
        tenant = await create_tenant(session, Tenant(name="Temple"))
        donor = User(
            tenant_id=tenant.id,
            name="Dana Donor",
            email="donor@example.com",
            password_hash="unused",
        )
        fund = Fund(tenant_id=tenant.id, name="Building Fund")
        session.add(donor)
        session.add(fund)
        if max_failures is not None:
            session.add(
                PledgeSettings(tenant_id=tenant.id, max_failures_before_pause=max_failures)
            )
        await session.commit()
        await session.refresh(donor)
        await session.refresh(fund)
        values = dict(
            tenant_id=tenant.id,
            user_id=donor.id,
            fund_id=fund.id,
            amount_cents=2500,
            currency="USD",
            frequency=PledgeFrequency.MONTHLY,
            start_date=NOW - timedelta(days=30),
            next_charge_at=NOW - timedelta(days=1),
            payment_method_token="tok_visa",
        )
        values.update(overrides)
        pledge = Pledge(**values)
        session.add(pledge)
        await session.commit()
        await session.refresh(pledge)
        return pledge.id


async def _load(Session, pledge_id):
    async with Session() as session:
        pledge = await session.get(Pledge, pledge_id)
        charges = (
            await session.execute(
                select(PledgeCharge)
                .where(PledgeCharge.pledge_id == pledge_id)
                .order_by(PledgeCharge.id)
            )
        ).scalars().all()
        donations = await get_donations_by_pledge(session, pledge_id)
        return pledge, charges, donations


async def _process(Session, pledge_id, gateway, notifier=None, now=NOW, timeout=30):
    async with Session() as session:
        return await process_pledge(
            session,
            pledge_id,
            gateway,
            notifier or RecordingNotifier(),
            now=now,
            timeout=timeout,
        )


def test_successful_charge_updates_pledge_and_ledger():
    async def run():
        Session = await _setup_db()
        pledge_id = await _seed_pledge(Session, amount_cents=5000)
        gateway = ScriptedGateway(GatewayResult.approved("txn_1"))
        notifier = RecordingNotifier()

        outcome = await _process(Session, pledge_id, gateway, notifier)
        assert outcome.success
        assert outcome.transaction_id == "txn_1"
        assert outcome.pledge_id == pledge_id
        assert gateway.calls == [("tok_visa", 5000, "USD")]

        pledge, charges, donations = await _load(Session, pledge_id)
        assert len(charges) == 1
        assert charges[0].status == ChargeStatus.SUCCESS
        assert charges[0].transaction_id == "txn_1"
        assert charges[0].charged_at == NOW
        assert len(donations) == 1
        assert donations[0].amount == 50.0
        assert donations[0].amount_cents == 5000
        assert donations[0].display_name == "Dana Donor"
        assert donations[0].charge_id == charges[0].id

        assert pledge.status == PledgeStatus.ACTIVE
        assert pledge.failure_count == 0
        assert pledge.last_charged_at == NOW
        assert pledge.next_charge_at == datetime(2025, 3, 15, 12, 0)
        assert pledge.total_charges_count == 1
        assert pledge.total_amount_cents == 5000
        assert pledge.claimed_at is None

        assert len(notifier.sent) == 1
        to, subject, text, html = notifier.sent[0]
        assert to == "donor@example.com"
        assert subject == "Receipt for your recurring donation - Building Fund"
        assert "50.00 USD" in text
        assert "txn_1" in text
        assert "2025-03-15" in text

    asyncio.run(run())


def test_success_resets_failure_count():
    async def run():
        Session = await _setup_db()
        pledge_id = await _seed_pledge(
            Session, failure_count=2, last_failed_at=NOW - timedelta(days=2)
        )
        outcome = await _process(
            Session, pledge_id, ScriptedGateway(GatewayResult.approved("txn_2"))
        )
        assert outcome.success
        pledge, _, _ = await _load(Session, pledge_id)
        assert pledge.failure_count == 0

    asyncio.run(run())


def test_failure_below_threshold_keeps_pledge_due():
    async def run():
        Session = await _setup_db()
        due_at = NOW - timedelta(days=1)
        pledge_id = await _seed_pledge(Session, failure_count=1, next_charge_at=due_at)
        notifier = RecordingNotifier()

        outcome = await _process(
            Session,
            pledge_id,
            ScriptedGateway(GatewayResult.declined("Card declined")),
            notifier,
        )
        assert not outcome.success
        assert outcome.error == "Card declined"

        pledge, charges, donations = await _load(Session, pledge_id)
        assert pledge.status == PledgeStatus.ACTIVE
        assert pledge.failure_count == 2
        assert pledge.next_charge_at == due_at
        assert pledge.last_failed_at == NOW
        assert pledge.last_failure_reason == "Card declined"
        assert pledge.total_charges_count == 0
        assert pledge.total_amount_cents == 0
        assert charges[0].status == ChargeStatus.FAILED
        assert charges[0].failure_reason == "Card declined"
        assert charges[0].attempt_count == 1
        assert charges[0].failed_at == NOW
        assert donations == []

        _, subject, text, _ = notifier.sent[0]
        assert subject == "Payment issue with your recurring donation"
        assert "still active" in text
        assert "Card declined" in text

    asyncio.run(run())


def test_failure_reaching_threshold_pauses_pledge():
    async def run():
        Session = await _setup_db()
        due_at = NOW - timedelta(days=1)
        pledge_id = await _seed_pledge(Session, failure_count=2, next_charge_at=due_at)
        notifier = RecordingNotifier()

        await _process(
            Session,
            pledge_id,
            ScriptedGateway(GatewayResult.declined("Insufficient funds")),
            notifier,
        )
        pledge, _, _ = await _load(Session, pledge_id)
        assert pledge.failure_count == 3
        assert pledge.status == PledgeStatus.FAILED
        assert pledge.paused_at == NOW
        assert pledge.next_charge_at == due_at

        _, subject, text, html = notifier.sent[0]
        assert subject == "Action required: Your recurring donation has been paused"
        assert "has been paused" in text
        assert "has been paused" in html

    asyncio.run(run())


def test_tenant_threshold_is_respected():
    async def run():
        Session = await _setup_db()
        pledge_id = await _seed_pledge(Session, max_failures=5, failure_count=2)
        await _process(
            Session, pledge_id, ScriptedGateway(GatewayResult.declined("Card declined"))
        )
        pledge, _, _ = await _load(Session, pledge_id)
        assert pledge.failure_count == 3
        assert pledge.status == PledgeStatus.ACTIVE

    asyncio.run(run())


def test_missing_payment_method_skips_gateway():
    async def run():
        Session = await _setup_db()
        pledge_id = await _seed_pledge(Session, payment_method_token=None)
        gateway = ScriptedGateway(GatewayResult.approved("txn_never"))

        outcome = await _process(Session, pledge_id, gateway)
        assert not outcome.success
        assert outcome.error == NO_PAYMENT_METHOD_REASON
        assert gateway.calls == []

        pledge, charges, _ = await _load(Session, pledge_id)
        assert charges[0].status == ChargeStatus.FAILED
        assert pledge.failure_count == 1

    asyncio.run(run())


def test_gateway_timeout_fails_the_charge():
    async def run():
        Session = await _setup_db()
        pledge_id = await _seed_pledge(Session)

        outcome = await _process(Session, pledge_id, SlowGateway(), timeout=0.05)
        assert not outcome.success
        assert outcome.error == GATEWAY_TIMEOUT_REASON

        pledge, charges, _ = await _load(Session, pledge_id)
        assert charges[0].status == ChargeStatus.FAILED
        assert charges[0].failure_reason == GATEWAY_TIMEOUT_REASON
        assert pledge.failure_count == 1

    asyncio.run(run())


def test_charge_reaching_end_date_completes_pledge():
    async def run():
        Session = await _setup_db()
        due_at = datetime(2025, 2, 15, 0, 0)
        pledge_id = await _seed_pledge(
            Session, end_date=datetime(2025, 3, 1), next_charge_at=due_at
        )
        notifier = RecordingNotifier()

        outcome = await _process(
            Session, pledge_id, ScriptedGateway(GatewayResult.approved("txn_last")), notifier
        )
        assert outcome.success

        pledge, charges, donations = await _load(Session, pledge_id)
        assert pledge.status == PledgeStatus.COMPLETED
        assert pledge.next_charge_at == due_at
        assert pledge.total_charges_count == 1
        assert len(donations) == 1
        assert "final scheduled charge" in notifier.sent[0][2]

    asyncio.run(run())


def test_end_date_in_the_past_completes_without_charging():
    async def run():
        Session = await _setup_db()
        pledge_id = await _seed_pledge(Session, end_date=NOW - timedelta(days=1))
        gateway = ScriptedGateway(GatewayResult.approved("txn_never"))

        outcome = await _process(Session, pledge_id, gateway)
        assert outcome.error == PLEDGE_ENDED
        assert gateway.calls == []

        pledge, charges, _ = await _load(Session, pledge_id)
        assert pledge.status == PledgeStatus.COMPLETED
        assert charges == []

    asyncio.run(run())


def test_totals_only_count_successful_charges():
    async def run():
        Session = await _setup_db()
        pledge_id = await _seed_pledge(Session, amount_cents=2500)
        gateway = ScriptedGateway(
            GatewayResult.approved("txn_a"),
            GatewayResult.approved("txn_b"),
            GatewayResult.approved("txn_c"),
            GatewayResult.declined("Card expired"),
        )
        for month in range(4):
            await _process(Session, pledge_id, gateway, now=NOW + timedelta(days=31 * month))

        pledge, charges, donations = await _load(Session, pledge_id)
        assert pledge.total_charges_count == 3
        assert pledge.total_amount_cents == 2500 * 3
        assert [c.status for c in charges] == [
            ChargeStatus.SUCCESS,
            ChargeStatus.SUCCESS,
            ChargeStatus.SUCCESS,
            ChargeStatus.FAILED,
        ]
        assert len(donations) == 3

    asyncio.run(run())


def test_notification_failure_does_not_undo_charge():
    async def run():
        Session = await _setup_db()
        pledge_id = await _seed_pledge(Session)

        outcome = await _process(
            Session,
            pledge_id,
            ScriptedGateway(GatewayResult.approved("txn_ok")),
            RecordingNotifier(fail=True),
        )
        assert outcome.success
        pledge, charges, donations = await _load(Session, pledge_id)
        assert charges[0].status == ChargeStatus.SUCCESS
        assert pledge.total_charges_count == 1
        assert len(donations) == 1

    asyncio.run(run())


def test_anonymous_pledge_hides_donor_name():
    async def run():
        Session = await _setup_db()
        pledge_id = await _seed_pledge(
            Session, is_anonymous=True, dedication_note="In memory of Grandma"
        )
        await _process(Session, pledge_id, ScriptedGateway(GatewayResult.approved("txn_x")))
        _, _, donations = await _load(Session, pledge_id)
        assert donations[0].display_name == "Anonymous"
        assert donations[0].is_anonymous
        assert donations[0].designation_note == "In memory of Grandma"

    asyncio.run(run())


def test_pending_charge_blocks_new_attempt():
    async def run():
        Session = await _setup_db()
        pledge_id = await _seed_pledge(Session, failure_count=1)
        async with Session() as session:
            session.add(PledgeCharge(pledge_id=pledge_id, amount_cents=2500, currency="USD"))
            await session.commit()
        gateway = ScriptedGateway(GatewayResult.approved("txn_dup"))

        outcome = await _process(Session, pledge_id, gateway)
        assert outcome.error == PLEDGE_HAS_PENDING_CHARGE
        assert gateway.calls == []

        pledge, charges, _ = await _load(Session, pledge_id)
        assert len(charges) == 1
        assert pledge.failure_count == 1
        assert pledge.claimed_at is None

    asyncio.run(run())


def test_fresh_claim_blocks_second_worker_but_stale_claim_does_not():
    async def run():
        Session = await _setup_db()
        busy_id = await _seed_pledge(
            Session, claimed_at=datetime.utcnow() - timedelta(minutes=1)
        )
        gateway = ScriptedGateway(GatewayResult.approved("txn_claim"))

        outcome = await _process(Session, busy_id, gateway)
        assert outcome.error == PLEDGE_BUSY
        assert gateway.calls == []

        async with Session() as session:
            pledge = await session.get(Pledge, busy_id)
            pledge.claimed_at = datetime.utcnow() - timedelta(hours=2)
            session.add(pledge)
            await session.commit()

        outcome = await _process(Session, busy_id, gateway)
        assert outcome.success
        pledge, _, _ = await _load(Session, busy_id)
        assert pledge.claimed_at is None

    asyncio.run(run())


def test_claim_uses_wall_clock_even_for_a_backdated_run():
    async def run():
        Session = await _setup_db()
        pledge_id = await _seed_pledge(Session)
        backdated = datetime.utcnow() - timedelta(minutes=20)

        async with Session() as session:
            stamp = await claim_pledge(session, pledge_id, timedelta(minutes=15))
        assert stamp is not None
        assert stamp > backdated + timedelta(minutes=15)

        # A second worker on the same pledge sees the claim as fresh.
        gateway = ScriptedGateway(GatewayResult.approved("txn_second"))
        outcome = await _process(Session, pledge_id, gateway, now=backdated)
        assert outcome.error == PLEDGE_BUSY
        assert gateway.calls == []

    asyncio.run(run())


def test_release_leaves_a_taken_over_claim_alone():
    async def run():
        Session = await _setup_db()
        pledge_id = await _seed_pledge(Session)

        async with Session() as session:
            first = await claim_pledge(session, pledge_id, timedelta(minutes=15))
        taken_over = first + timedelta(minutes=30)
        async with Session() as session:
            pledge = await session.get(Pledge, pledge_id)
            pledge.claimed_at = taken_over
            session.add(pledge)
            await session.commit()

        async with Session() as session:
            assert not await release_pledge_claim(session, pledge_id, first)
        pledge, _, _ = await _load(Session, pledge_id)
        assert pledge.claimed_at == taken_over

        async with Session() as session:
            assert await release_pledge_claim(session, pledge_id, taken_over)
        pledge, _, _ = await _load(Session, pledge_id)
        assert pledge.claimed_at is None

    asyncio.run(run())


def test_missing_and_inactive_pledges_are_reported():
    async def run():
        Session = await _setup_db()
        paused_id = await _seed_pledge(Session, status=PledgeStatus.PAUSED)
        gateway = ScriptedGateway(GatewayResult.approved("txn_never"))

        outcome = await _process(Session, 9999, gateway)
        assert outcome.error == PLEDGE_NOT_FOUND
        outcome = await _process(Session, paused_id, gateway)
        assert outcome.error == PLEDGE_NOT_ACTIVE
        assert gateway.calls == []

    asyncio.run(run())


def test_gateway_error_leaves_pending_charge_and_releases_claim():
    async def run():
        Session = await _setup_db()
        pledge_id = await _seed_pledge(Session)
        gateway = ScriptedGateway(RuntimeError("connection reset"))

        with pytest.raises(RuntimeError):
            await _process(Session, pledge_id, gateway)

        pledge, charges, donations = await _load(Session, pledge_id)
        assert charges[0].status == ChargeStatus.PENDING
        assert donations == []
        assert pledge.failure_count == 0
        assert pledge.claimed_at is None

    asyncio.run(run())
