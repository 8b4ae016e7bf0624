"""Recurring pledge billing.

``process_pledge`` runs one billing attempt for one pledge: it records a
pending charge, calls the payment gateway, finalizes the charge, updates
the pledge's schedule and health counters and notifies the donor.

``process_due_pledges`` and ``retry_failed_pledges`` are the batch entry
points invoked by the background loop in ``app.main`` or by an admin
through the API.  Each pledge in a batch is processed in its own session
and an error on one pledge never stops the rest of the batch.
"""

import os
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.crud import (
    build_donation_record,
    claim_pledge,
    create_pending_charge,
    get_due_pledge_ids,
    get_fund,
    get_pending_charge,
    get_pledge,
    get_pledge_settings,
    get_retry_pledge_ids,
    get_user,
    mark_charge_failed,
    mark_charge_succeeded,
    release_pledge_claim,
    save_pledge,
)
from app.frequency import next_charge_date
from app.gateway import GatewayResult, PaymentGateway, NO_PAYMENT_METHOD_REASON
from app.models import Pledge, PledgeCharge, PledgeSettings, PledgeStatus, User, Fund
from app.notifications import Notifier, build_failure_email, build_receipt_email
from app.schemas.pledge import ChargeOutcome

logger = logging.getLogger(__name__)

GATEWAY_TIMEOUT_SECONDS = float(os.getenv("PAYMENT_GATEWAY_TIMEOUT_SECONDS", "30"))
CLAIM_TIMEOUT_SECONDS = int(os.getenv("PLEDGE_CLAIM_TIMEOUT_SECONDS", "900"))

GATEWAY_TIMEOUT_REASON = "Payment gateway timed out"
PLEDGE_NOT_FOUND = "Pledge not found"
PLEDGE_NOT_ACTIVE = "Pledge is not active"
PLEDGE_BUSY = "Pledge is already being processed"
PLEDGE_HAS_PENDING_CHARGE = "Pledge has an unresolved pending charge"
PLEDGE_ENDED = "Pledge end date has passed"


async def _attempt_charge(
    gateway: PaymentGateway, pledge: Pledge, timeout: float
) -> GatewayResult:
    """Call the gateway once, short-circuiting when no payment method is bound."""

    if not pledge.payment_method_token:
        return GatewayResult.declined(NO_PAYMENT_METHOD_REASON)
    try:
        return await asyncio.wait_for(
            gateway.attempt(
                pledge.payment_method_token, pledge.amount_cents, pledge.currency
            ),
            timeout,
        )
    except asyncio.TimeoutError:
        logger.warning(
            "Gateway call for pledge %s timed out after %ss", pledge.id, timeout
        )
        return GatewayResult.declined(GATEWAY_TIMEOUT_REASON)


async def _notify(
    notifier: Notifier, donor: Optional[User], subject: str, text: str, html: str
) -> None:
    """Best-effort delivery; errors are logged and never propagated."""

    if donor is None or not donor.email:
        return
    try:
        await notifier.send(donor.email, subject, text, html)
    except Exception:
        logger.exception("Failed to send '%s' to %s", subject, donor.email)


async def _record_success(
    db: AsyncSession,
    pledge: Pledge,
    charge: PledgeCharge,
    result: GatewayResult,
    donor: Optional[User],
    fund: Optional[Fund],
    notifier: Notifier,
    now: datetime,
) -> ChargeOutcome:
    mark_charge_succeeded(charge, result.transaction_id, now)
    db.add(charge)
    db.add(build_donation_record(pledge, charge, donor))

    candidate = next_charge_date(now, pledge.frequency)
    completed = pledge.end_date is not None and candidate >= pledge.end_date

    pledge.last_charged_at = now
    pledge.failure_count = 0
    pledge.total_charges_count += 1
    pledge.total_amount_cents += charge.amount_cents
    if completed:
        # next_charge_at stays frozen at the cycle just collected
        pledge.status = PledgeStatus.COMPLETED
    else:
        pledge.next_charge_at = candidate
    await save_pledge(db, pledge)
    logger.info(
        "Charged pledge %s (%s %s), transaction %s%s",
        pledge.id,
        charge.amount_cents,
        charge.currency,
        result.transaction_id,
        "; pledge completed" if completed else "",
    )

    subject, text, html = build_receipt_email(
        amount_cents=charge.amount_cents,
        currency=charge.currency,
        fund_name=fund.name if fund else "General",
        transaction_id=result.transaction_id or "",
        charged_at=now,
        next_charge_at=None if completed else candidate,
    )
    await _notify(notifier, donor, subject, text, html)
    return ChargeOutcome(
        pledge_id=pledge.id, success=True, transaction_id=result.transaction_id
    )


async def _record_failure(
    db: AsyncSession,
    pledge: Pledge,
    charge: PledgeCharge,
    result: GatewayResult,
    settings: PledgeSettings,
    donor: Optional[User],
    fund: Optional[Fund],
    notifier: Notifier,
    now: datetime,
) -> ChargeOutcome:
    reason = result.reason or "Payment failed"
    mark_charge_failed(charge, reason, now)
    db.add(charge)

    # next_charge_at is left alone: below the threshold the pledge stays
    # due and is picked up again on the next scheduler run.
    pledge.last_failed_at = now
    pledge.last_failure_reason = reason
    pledge.failure_count += 1
    paused = pledge.failure_count >= settings.max_failures_before_pause
    if paused:
        pledge.status = PledgeStatus.FAILED
        pledge.paused_at = now
    await save_pledge(db, pledge)
    if paused:
        logger.warning(
            "Pledge %s paused after %s failed charges: %s",
            pledge.id,
            pledge.failure_count,
            reason,
        )
    else:
        logger.info(
            "Charge for pledge %s failed (%s/%s): %s",
            pledge.id,
            pledge.failure_count,
            settings.max_failures_before_pause,
            reason,
        )

    subject, text, html = build_failure_email(
        amount_cents=charge.amount_cents,
        currency=charge.currency,
        fund_name=fund.name if fund else "General",
        reason=reason,
        paused=paused,
    )
    await _notify(notifier, donor, subject, text, html)
    return ChargeOutcome(pledge_id=pledge.id, success=False, error=reason)


async def _charge_claimed_pledge(
    db: AsyncSession,
    pledge_id: int,
    gateway: PaymentGateway,
    notifier: Notifier,
    now: datetime,
    timeout: float,
) -> ChargeOutcome:
    pledge = await get_pledge(db, pledge_id)
    await db.refresh(pledge)
    if pledge.status != PledgeStatus.ACTIVE:
        return ChargeOutcome(pledge_id=pledge_id, success=False, error=PLEDGE_NOT_ACTIVE)

    pending = await get_pending_charge(db, pledge_id)
    if pending is not None:
        logger.warning(
            "Skipping pledge %s: charge %s from %s is still pending",
            pledge_id,
            pending.id,
            pending.created_at,
        )
        return ChargeOutcome(
            pledge_id=pledge_id, success=False, error=PLEDGE_HAS_PENDING_CHARGE
        )

    if pledge.end_date is not None and pledge.end_date <= now:
        pledge.status = PledgeStatus.COMPLETED
        await save_pledge(db, pledge)
        logger.info("Pledge %s reached its end date; marked completed", pledge_id)
        return ChargeOutcome(pledge_id=pledge_id, success=False, error=PLEDGE_ENDED)

    settings = await get_pledge_settings(db, pledge.tenant_id)
    donor = await get_user(db, pledge.user_id)
    fund = await get_fund(db, pledge.fund_id)

    # Committed before the gateway call so an interrupted attempt stays visible.
    charge = await create_pending_charge(db, pledge)
    result = await _attempt_charge(gateway, pledge, timeout)

    if result.success:
        return await _record_success(
            db, pledge, charge, result, donor, fund, notifier, now
        )
    return await _record_failure(
        db, pledge, charge, result, settings, donor, fund, notifier, now
    )


async def process_pledge(
    db: AsyncSession,
    pledge_id: int,
    gateway: PaymentGateway,
    notifier: Notifier,
    now: datetime | None = None,
    timeout: float = GATEWAY_TIMEOUT_SECONDS,
) -> ChargeOutcome:
    """Run one billing attempt for a single pledge.

    The pledge is claimed for the duration of the attempt so that two
    workers never charge it at the same time.  ``now`` is the billing
    clock used for scheduling; the claim itself always uses wall-clock
    time.  Expected failures (declines, missing payment method, timeouts)
    are reported through the returned outcome; anything unexpected
    propagates to the caller.
    """

    now = now or datetime.utcnow()
    stamp = await claim_pledge(
        db, pledge_id, timedelta(seconds=CLAIM_TIMEOUT_SECONDS)
    )
    if stamp is None:
        if await get_pledge(db, pledge_id) is None:
            return ChargeOutcome(pledge_id=pledge_id, success=False, error=PLEDGE_NOT_FOUND)
        logger.warning("Pledge %s is claimed by another worker", pledge_id)
        return ChargeOutcome(pledge_id=pledge_id, success=False, error=PLEDGE_BUSY)
    try:
        return await _charge_claimed_pledge(
            db, pledge_id, gateway, notifier, now, timeout
        )
    finally:
        if not await release_pledge_claim(db, pledge_id, stamp):
            logger.warning(
                "Claim on pledge %s was taken over before it was released", pledge_id
            )


async def _run_batch(
    session_factory: async_sessionmaker,
    pledge_ids: list[int],
    label: str,
    gateway: PaymentGateway,
    notifier: Notifier,
    now: datetime,
    concurrency: int,
    timeout: float,
) -> list[ChargeOutcome]:
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def run_one(pledge_id: int) -> ChargeOutcome:
        async with semaphore:
            try:
                async with session_factory() as db:
                    return await process_pledge(
                        db, pledge_id, gateway, notifier, now=now, timeout=timeout
                    )
            except Exception as exc:
                logger.exception("Error %s pledge %s", label, pledge_id)
                return ChargeOutcome(
                    pledge_id=pledge_id,
                    success=False,
                    error=str(exc) or exc.__class__.__name__,
                )

    return list(await asyncio.gather(*(run_one(pid) for pid in pledge_ids)))


async def process_due_pledges(
    session_factory: async_sessionmaker,
    tenant_id: int | None = None,
    *,
    gateway: PaymentGateway,
    notifier: Notifier,
    now: datetime | None = None,
    concurrency: int = 1,
    timeout: float = GATEWAY_TIMEOUT_SECONDS,
) -> list[ChargeOutcome]:
    """Charge every active pledge whose next charge date has arrived.

    Pledges are taken oldest-due first, optionally limited to one tenant.
    Returns one outcome per selected pledge, in selection order.
    """

    now = now or datetime.utcnow()
    async with session_factory() as db:
        pledge_ids = await get_due_pledge_ids(db, now, tenant_id)
    logger.info("Found %s pledges due for processing", len(pledge_ids))
    return await _run_batch(
        session_factory,
        pledge_ids,
        "processing",
        gateway,
        notifier,
        now,
        concurrency,
        timeout,
    )


async def retry_failed_pledges(
    session_factory: async_sessionmaker,
    tenant_id: int | None = None,
    *,
    gateway: PaymentGateway,
    notifier: Notifier,
    now: datetime | None = None,
    concurrency: int = 1,
    timeout: float = GATEWAY_TIMEOUT_SECONDS,
) -> list[ChargeOutcome]:
    """Re-attempt failed pledges whose tenant retry interval has elapsed."""

    now = now or datetime.utcnow()
    async with session_factory() as db:
        pledge_ids = await get_retry_pledge_ids(db, now, tenant_id)
    logger.info("Found %s pledges to retry", len(pledge_ids))
    return await _run_batch(
        session_factory,
        pledge_ids,
        "retrying",
        gateway,
        notifier,
        now,
        concurrency,
        timeout,
    )
