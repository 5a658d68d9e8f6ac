import logging
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import case, func, select

from common.error_handling import require_id
from common.schemas import AllocationStats, AllocationStatus
from allocation_service.db import DataStore
from allocation_service.directory import PayoutRequestStore
from allocation_service.models import Allocation, to_money

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


def _status_count(status: AllocationStatus):
    return func.sum(case((Allocation.status == status.value, 1), else_=0))


def allocation_percentage(total_allocated: Decimal, payout_total: Decimal) -> Decimal:
    if payout_total <= 0:
        return Decimal("0.00")
    return (total_allocated / payout_total * HUNDRED).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class StatsAggregator:
    """Derived metrics over a payout request's allocations.

    total_allocated covers every status, cancelled included, so the
    percentage can differ from what the conservation guard counts.
    """

    def __init__(self, datastore: DataStore, payout_requests: PayoutRequestStore):
        self.datastore = datastore
        self.payout_requests = payout_requests

    def get_stats(self, payout_request_id: int) -> AllocationStats:
        require_id(payout_request_id, "payout_request_id")
        with self.datastore.session() as session:
            payout_request = self.payout_requests.fetch(session, payout_request_id)
            if payout_request is None:
                logger.debug(f"Stats requested for unknown payout request {payout_request_id}")
                return AllocationStats()

            row = session.execute(
                select(
                    func.count(Allocation.id),
                    func.coalesce(func.sum(Allocation.allocated_amount), 0),
                    func.count(func.distinct(Allocation.user_id)),
                    _status_count(AllocationStatus.DRAFT),
                    _status_count(AllocationStatus.CONFIRMED),
                    _status_count(AllocationStatus.PAID),
                    _status_count(AllocationStatus.CANCELLED),
                ).where(Allocation.payout_request_id == payout_request_id)
            ).one()
            payout_total = to_money(payout_request.total_amount)

        total_allocations, total_allocated, unique_users, drafts, confirmed, paid, cancelled = row
        total_allocations = int(total_allocations or 0)
        total_allocated = to_money(total_allocated)
        avg_allocation = to_money(total_allocated / total_allocations) if total_allocations else Decimal("0.00")

        return AllocationStats(
            total_allocations=total_allocations,
            total_allocated=total_allocated,
            avg_allocation=avg_allocation,
            unique_users=int(unique_users or 0),
            payout_total=payout_total,
            allocation_percentage=allocation_percentage(total_allocated, payout_total),
            draft_count=int(drafts or 0),
            confirmed_count=int(confirmed or 0),
            paid_count=int(paid or 0),
            cancelled_count=int(cancelled or 0),
        )
