from allocation_service.db import DataStore
from allocation_service.directory import FlowDirectory, PayoutRequestStore
from allocation_service.guard import ConservationGuard
from allocation_service.lifecycle import LifecycleManager
from allocation_service.reconciler import BulkReconciler
from allocation_service.stats import StatsAggregator
from allocation_service.store import AllocationStore


class AllocationServices:
    """The allocation components wired against one DataStore."""

    def __init__(self, datastore: DataStore):
        self.datastore = datastore
        self.guard = ConservationGuard()
        self.payout_requests = PayoutRequestStore(datastore)
        self.reconciler = BulkReconciler(datastore, self.guard, self.payout_requests)
        self.store = AllocationStore(datastore, self.guard, self.reconciler)
        self.lifecycle = LifecycleManager(datastore, self.guard)
        self.stats = StatsAggregator(datastore, self.payout_requests)
        self.flows = FlowDirectory(datastore, self.payout_requests)
