"""
Read-only lookups against tables owned by the rest of the backend
(payout requests, flows, users). Used for budget data and display only.
"""
import logging
from typing import Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from common.error_handling import NotFoundError
from common.schemas import (
    FlowUser as FlowUserSchema, FlowUserAllocation, FlowWithUsers,
    PayoutRequestInfo, UsersForAllocation,
)
from allocation_service.db import DataStore
from allocation_service.models import (
    Allocation, Flow, FlowUser, NO_FLOW_KEY, PayoutRequest, PayoutRequestFlow, User,
)

logger = logging.getLogger(__name__)


def full_name(first_name: Optional[str], last_name: Optional[str]) -> Optional[str]:
    parts = [part for part in (first_name, last_name) if part]
    return " ".join(parts) or None


class PayoutRequestStore:
    def __init__(self, datastore: DataStore):
        self.datastore = datastore

    @staticmethod
    def fetch(session: Session, payout_request_id: int) -> Optional[PayoutRequest]:
        return session.get(PayoutRequest, payout_request_id)

    def get_by_id(self, payout_request_id: int) -> Optional[PayoutRequestInfo]:
        with self.datastore.session() as session:
            row = self.fetch(session, payout_request_id)
            return PayoutRequestInfo.model_validate(row) if row else None

    def require(self, payout_request_id: int) -> PayoutRequestInfo:
        info = self.get_by_id(payout_request_id)
        if info is None:
            raise NotFoundError(f"Payout request {payout_request_id} not found", field="payout_request_id")
        return info


class FlowDirectory:
    """Flows attached to a payout request, with their active users."""

    def __init__(self, datastore: DataStore, payout_requests: PayoutRequestStore):
        self.datastore = datastore
        self.payout_requests = payout_requests

    def users_for_allocation(self, payout_request_id: int) -> UsersForAllocation:
        payout_request = self.payout_requests.require(payout_request_id)

        with self.datastore.session() as session:
            rows = session.execute(
                select(PayoutRequestFlow, Flow, User, FlowUser.status)
                .join(Flow, PayoutRequestFlow.flow_id == Flow.id)
                .join(FlowUser, (FlowUser.flow_id == Flow.id) & (FlowUser.status == "active"))
                .join(User, FlowUser.user_id == User.id)
                .where(PayoutRequestFlow.payout_request_id == payout_request_id)
                .order_by(Flow.name, User.first_name, User.last_name, User.id)
            ).all()

            allocations = session.execute(
                select(Allocation).where(Allocation.payout_request_id == payout_request_id)
            ).scalars().all()
            by_key: Dict[Tuple[int, int], Allocation] = {
                (a.user_id, a.flow_key): a for a in allocations
            }

            flows: Dict[int, FlowWithUsers] = {}
            for link, flow, user, user_flow_status in rows:
                view = flows.get(flow.id)
                if view is None:
                    view = flows[flow.id] = FlowWithUsers(
                        id=flow.id,
                        name=flow.name,
                        status=flow.status,
                        cpa=flow.cpa,
                        currency=flow.currency,
                        description=flow.description,
                        payout_amount=link.flow_amount,
                        conversions=link.conversion_count,
                    )
                # A flow-scoped allocation wins over a payout-level one
                allocation = by_key.get((user.id, flow.id)) or by_key.get((user.id, NO_FLOW_KEY))
                view.users.append(FlowUserSchema(
                    id=user.id,
                    username=user.username,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    full_name=full_name(user.first_name, user.last_name),
                    telegram_id=user.telegram_id,
                    flow_status=user_flow_status,
                    allocation=FlowUserAllocation(
                        id=allocation.id,
                        allocated_amount=allocation.allocated_amount,
                        percentage=allocation.percentage,
                        status=allocation.status,
                        description=allocation.description,
                        notes=allocation.notes,
                        created_at=allocation.created_at,
                    ) if allocation else None,
                    has_allocation=allocation is not None,
                ))

        logger.debug(f"Payout request {payout_request_id}: {len(flows)} flows for allocation")
        return UsersForAllocation(payout_request=payout_request, flows=list(flows.values()))
