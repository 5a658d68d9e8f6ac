"""
Typed filter conditions for allocation queries.

Only the filter names registered in ALLOCATION_FILTERS are accepted; each one
is bound to a column and an operator from FilterOp, so no SQL text is ever
assembled from request input.
"""
import operator
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping

from sqlalchemy.sql.elements import ColumnElement

from common.error_handling import ValidationError
from common.schemas import AllocationStatus
from allocation_service.models import Allocation, PayoutRequest


class FilterOp(str, Enum):
    EQ = "eq"
    GTE = "gte"
    LTE = "lte"


_OPERATORS: Dict[FilterOp, Callable[[Any, Any], ColumnElement]] = {
    FilterOp.EQ: operator.eq,
    FilterOp.GTE: operator.ge,
    FilterOp.LTE: operator.le,
}


@dataclass(frozen=True)
class FilterSpec:
    column: Any
    op: FilterOp
    parse: Callable[[Any], Any]


def _parse_date(value):
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"'{value}' is not a valid date (expected YYYY-MM-DD)")


def _parse_allocation_status(value):
    try:
        return AllocationStatus(value).value
    except ValueError:
        raise ValidationError(f"'{value}' is not a valid allocation status")


ALLOCATION_FILTERS: Dict[str, FilterSpec] = {
    "period_start": FilterSpec(PayoutRequest.period_start, FilterOp.GTE, _parse_date),
    "period_end": FilterSpec(PayoutRequest.period_end, FilterOp.LTE, _parse_date),
    "status": FilterSpec(PayoutRequest.status, FilterOp.EQ, str),
    "allocation_status": FilterSpec(Allocation.status, FilterOp.EQ, _parse_allocation_status),
}


def build_conditions(filters: Mapping[str, Any], registry: Mapping[str, FilterSpec] = ALLOCATION_FILTERS) -> List[ColumnElement]:
    """Translate {name: value} into SQLAlchemy conditions; None values are skipped."""
    conditions = []
    for name, raw in filters.items():
        if raw is None:
            continue
        spec = registry.get(name)
        if spec is None:
            raise ValidationError(f"Unknown filter '{name}'", field=name)
        conditions.append(_OPERATORS[spec.op](spec.column, spec.parse(raw)))
    return conditions
