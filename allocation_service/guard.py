"""
Conservation guard: the allocated total of a payout request never exceeds
the amount received.

Callers must run lock_payout_request() and check_within_budget() inside the
same transaction as the write they protect. The lock is a row lock on the
payout request (SELECT ... FOR UPDATE), so concurrent writers on one request
are serialized while other requests proceed in parallel.
"""
import logging
from decimal import Decimal
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from common.error_handling import ConservationViolation, NotFoundError
from common.schemas import AllocationStatus
from allocation_service.models import Allocation, PayoutRequest, to_money

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def evaluate_budget(total_amount: Decimal, current_total: Decimal, proposed_delta: Decimal) -> Decimal:
    """Return the overrun of current_total + proposed_delta over total_amount (0 if within budget).

    Exact Decimal arithmetic: reaching the total exactly is allowed and any
    excess, however small, is reported as-is.
    """
    proposed_total = Decimal(current_total) + Decimal(proposed_delta)
    overrun = proposed_total - Decimal(total_amount)
    return overrun if overrun > ZERO else ZERO


class ConservationGuard:

    def lock_payout_request(self, session: Session, payout_request_id: int) -> PayoutRequest:
        payout_request = session.execute(
            select(PayoutRequest)
            .where(PayoutRequest.id == payout_request_id)
            .with_for_update()
        ).scalar_one_or_none()
        if payout_request is None:
            raise NotFoundError(f"Payout request {payout_request_id} not found", field="payout_request_id")
        return payout_request

    def active_total(self, session: Session, payout_request_id: int, excluding: Iterable[int] = ()) -> Decimal:
        """Sum of allocations that still count against the budget (everything but cancelled)."""
        query = (
            select(func.coalesce(func.sum(Allocation.allocated_amount), 0))
            .where(Allocation.payout_request_id == payout_request_id)
            .where(Allocation.status != AllocationStatus.CANCELLED.value)
        )
        excluding = [allocation_id for allocation_id in excluding if allocation_id is not None]
        if excluding:
            query = query.where(Allocation.id.not_in(excluding))
        return to_money(session.execute(query).scalar())

    def check_within_budget(
        self,
        session: Session,
        payout_request: PayoutRequest,
        proposed_delta: Decimal,
        excluding: Iterable[int] = (),
    ) -> Decimal:
        """Raise ConservationViolation if the write would overrun; return the proposed total otherwise."""
        current_total = self.active_total(session, payout_request.id, excluding)
        total_amount = to_money(payout_request.total_amount)
        overrun = evaluate_budget(total_amount, current_total, proposed_delta)
        proposed_total = current_total + Decimal(proposed_delta)
        if overrun > ZERO:
            logger.warning(
                f"Conservation check failed for payout request {payout_request.id}: "
                f"{proposed_total} > {total_amount} (overrun {overrun})"
            )
            raise ConservationViolation(
                overrun=overrun,
                total_amount=total_amount,
                proposed_total=proposed_total,
                payout_request_id=payout_request.id,
            )
        return proposed_total

    def precheck(self, payout_request_id: int, total_amount: Decimal, amounts: Iterable[Decimal]) -> None:
        """Reject a batch whose own sum already exceeds the total, before any storage access."""
        requested = sum((Decimal(amount) for amount in amounts), ZERO)
        overrun = evaluate_budget(to_money(total_amount), ZERO, requested)
        if overrun > ZERO:
            raise ConservationViolation(
                overrun=overrun,
                total_amount=to_money(total_amount),
                proposed_total=requested,
                payout_request_id=payout_request_id,
            )
