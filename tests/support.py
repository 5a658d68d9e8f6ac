"""
Shared fixtures: a file-backed SQLite datastore seeded with users, flows
and payout requests.
"""
import shutil
import tempfile
import unittest
from datetime import date
from decimal import Decimal

from common.schemas import AllocationCreate
from common.settings import Settings
from allocation_service.db import DataStore
from allocation_service.models import Flow, FlowUser, PayoutRequest, PayoutRequestFlow, User
from allocation_service.services import AllocationServices

ACTOR = 1
MAIN_REQUEST = 1     # 1000.00 USD, flows 1 and 2
SMALL_REQUEST = 2    # 500.00 USD
EMPTY_REQUEST = 3    # 0.00 USD
MISSING_REQUEST = 999


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


def new_allocation(user_id, amount, flow_id=None, **extra) -> AllocationCreate:
    return AllocationCreate(user_id=user_id, allocated_amount=money(amount), flow_id=flow_id, **extra)


def seed(datastore: DataStore) -> None:
    with datastore.transaction() as session:
        session.add_all([
            User(id=ACTOR, username="admin", first_name="Ada", last_name="Admin"),
            User(id=5, username="alice", first_name="Alice", last_name="Smith", telegram_id="5005"),
            User(id=7, username="bob", first_name="Bob"),
            User(id=10, username="carol", first_name="Carol", last_name="Jones"),
            User(id=11, username="dave", first_name="Dave", last_name="Brown"),
        ])
        session.add_all([
            Flow(id=1, name="Alpha", status="active", cpa=money("12.50"), currency="USD"),
            Flow(id=2, name="Beta", status="paused", cpa=money("8.00"), currency="USD"),
        ])
        session.add_all([
            PayoutRequest(id=MAIN_REQUEST, total_amount=money("1000.00"), currency="USD", status="approved",
                          period_start=date(2026, 9, 1), period_end=date(2026, 9, 30)),
            PayoutRequest(id=SMALL_REQUEST, total_amount=money("500.00"), currency="EUR", status="draft",
                          period_start=date(2026, 8, 1), period_end=date(2026, 8, 31)),
            PayoutRequest(id=EMPTY_REQUEST, total_amount=money("0.00"), currency="USD", status="draft"),
        ])
        session.flush()
        session.add_all([
            PayoutRequestFlow(payout_request_id=MAIN_REQUEST, flow_id=1, flow_amount=money("600.00"), conversion_count=48),
            PayoutRequestFlow(payout_request_id=MAIN_REQUEST, flow_id=2, flow_amount=money("400.00"), conversion_count=50),
            FlowUser(flow_id=1, user_id=5, status="active"),
            FlowUser(flow_id=1, user_id=7, status="active"),
            FlowUser(flow_id=2, user_id=10, status="active"),
            FlowUser(flow_id=2, user_id=11, status="removed"),
        ])


class AllocationTestCase(unittest.TestCase):
    """Fresh seeded database per test"""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="allocations-")
        config = Settings(database_url=f"sqlite:///{self.tmpdir}/allocations.db", sqlite_busy_timeout=30)
        self.datastore = DataStore(config).init()
        self.datastore.create_schema()
        seed(self.datastore)
        self.services = AllocationServices(self.datastore)

    def tearDown(self):
        self.datastore.dispose()
        shutil.rmtree(self.tmpdir, ignore_errors=True)
