import re
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import (
    Column, Integer, BigInteger, String, Numeric, Date, DateTime, Text,
    ForeignKey, UniqueConstraint, Index, func,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, validates

from common.error_handling import ConflictError, NotFoundError
from common.schemas import AllocationRecord

Base = declarative_base()

# Stored in place of a NULL flow_id so the unique key treats "no flow" as one value
NO_FLOW_KEY = 0

MONEY = Numeric(14, 2)
CENTS = Decimal("0.01")

def to_money(value) -> Decimal:
    """Quantize a database or user value to cents."""
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)

def flow_key_for(flow_id):
    return NO_FLOW_KEY if flow_id is None else int(flow_id)

# Read-only tables owned by other parts of the backend

class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    username = Column(String(64), nullable=False)
    first_name = Column(String(100))
    last_name = Column(String(100))
    telegram_id = Column(String(64))

class Flow(Base):
    __tablename__ = "flows"
    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    status = Column(String(32), default="active")
    cpa = Column(MONEY)
    currency = Column(String(3), default="USD")
    description = Column(Text)

class FlowUser(Base):
    __tablename__ = "flow_users"
    flow_id = Column(Integer, ForeignKey("flows.id"), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    status = Column(String(32), default="active")
    created_at = Column(DateTime, server_default=func.now())

class PayoutRequest(Base):
    __tablename__ = "partner_payout_requests"
    id = Column(Integer, primary_key=True)
    total_amount = Column(MONEY, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(32), nullable=False, default="draft")
    period_start = Column(Date)
    period_end = Column(Date)

class PayoutRequestFlow(Base):
    __tablename__ = "partner_payout_flows"
    payout_request_id = Column(Integer, ForeignKey("partner_payout_requests.id"), primary_key=True)
    flow_id = Column(Integer, ForeignKey("flows.id"), primary_key=True)
    flow_amount = Column(MONEY)
    conversion_count = Column(Integer, default=0)

class Allocation(Base):
    __tablename__ = "payout_request_allocations"
    __table_args__ = (
        UniqueConstraint("payout_request_id", "user_id", "flow_key", name="uq_allocation_key"),
        Index("ix_allocations_user", "user_id"),
        {"sqlite_autoincrement": True},
    )

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    payout_request_id = Column(Integer, ForeignKey("partner_payout_requests.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    flow_id = Column(Integer, ForeignKey("flows.id"), nullable=True)
    flow_key = Column(Integer, nullable=False, default=NO_FLOW_KEY)
    allocated_amount = Column(MONEY, nullable=False)
    percentage = Column(Numeric(5, 2))
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(16), nullable=False, default="draft")  # draft|confirmed|paid|cancelled
    description = Column(String(500))
    notes = Column(String(1000))
    created_by = Column(Integer, ForeignKey("users.id"))
    updated_by = Column(Integer, ForeignKey("users.id"))
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    @validates("flow_id")
    def _sync_flow_key(self, key, flow_id):
        self.flow_key = flow_key_for(flow_id)
        return flow_id

    def to_record(self) -> AllocationRecord:
        return AllocationRecord.model_validate(self)


def _integrity_failure(error: IntegrityError):
    """Map a constraint failure to a domain error; None when it is neither the allocation key nor a reference."""
    detail = str(error.orig)
    if "uq_allocation_key" in detail or "payout_request_allocations.flow_key" in detail:
        return ConflictError(
            "Allocation for this user and flow already exists on the payout request",
            context={"constraint": "uq_allocation_key"},
        )
    if "foreign key" in detail.lower():
        # MySQL names the column, SQLite does not
        match = re.search(r"FOREIGN KEY \(`(\w+)`\)", detail)
        field = match.group(1) if match else None
        return NotFoundError(
            f"Referenced {field or 'user or flow'} does not exist",
            field=field,
        )
    return None


def flush_allocations(session, allocations):
    """Flush pending writes and return fresh records.

    A unique key collision becomes ConflictError and a missing user or flow
    becomes NotFoundError; any other constraint failure propagates.
    """
    try:
        session.flush()
    except IntegrityError as e:
        mapped = _integrity_failure(e)
        if mapped is None:
            raise
        raise mapped from e
    for allocation in allocations:
        session.refresh(allocation)
    return [allocation.to_record() for allocation in allocations]
