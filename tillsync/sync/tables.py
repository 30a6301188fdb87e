"""Synchronized tables, their dependency tiers and foreign-key edges."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Tuple, Union

from ..errors import InvalidTable


@dataclass(frozen=True)
class DependencyField:
    """A foreign key: ``field`` on this table references ``table`` by id."""

    field: str
    table: "SyncTable"
    required: bool = True


class SyncTable(str, Enum):
    """Every table the engine knows how to synchronize."""

    USERS = "users"
    CUSTOMERS = "customers"
    SERVICE_TYPES = "service_types"
    EXPENSES = "expenses"
    JOBS = "jobs"
    PAYMENTS = "payments"
    LEDGER_ENTRIES = "ledger_entries"
    AUDIT_LOGS = "audit_logs"

    @classmethod
    def parse(cls, value: Union[str, "SyncTable"]) -> "SyncTable":
        """Resolve a wire table name, raising ``InvalidTable`` when unknown."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip())
            except ValueError:
                pass
        raise InvalidTable(
            value,
            f"Invalid table name: {value}. Valid tables: {', '.join(SYNC_ORDER_NAMES)}",
        )

    @property
    def tier(self) -> int:
        return TIERS[self]

    @property
    def dependency_fields(self) -> Tuple[DependencyField, ...]:
        return DEPENDENCY_FIELDS.get(self, ())

    @property
    def dependencies(self) -> List["SyncTable"]:
        """Tables this one references directly, without duplicates."""
        seen: List[SyncTable] = []
        for dep in self.dependency_fields:
            if dep.table not in seen:
                seen.append(dep.table)
        return seen

    @property
    def append_only(self) -> bool:
        return self in APPEND_ONLY


TIERS: Dict[SyncTable, int] = {
    SyncTable.USERS: 1,
    SyncTable.CUSTOMERS: 1,
    SyncTable.SERVICE_TYPES: 1,
    SyncTable.EXPENSES: 1,
    SyncTable.JOBS: 2,
    SyncTable.PAYMENTS: 3,
    SyncTable.LEDGER_ENTRIES: 4,
    SyncTable.AUDIT_LOGS: 5,
}

DEPENDENCY_FIELDS: Dict[SyncTable, Tuple[DependencyField, ...]] = {
    SyncTable.JOBS: (
        DependencyField("customer_id", SyncTable.CUSTOMERS),
        DependencyField("service_id", SyncTable.SERVICE_TYPES),
    ),
    SyncTable.PAYMENTS: (
        DependencyField("customer_id", SyncTable.CUSTOMERS, required=False),
        DependencyField("job_id", SyncTable.JOBS, required=False),
    ),
    SyncTable.LEDGER_ENTRIES: (
        DependencyField("customer_id", SyncTable.CUSTOMERS, required=False),
    ),
}

# Ledger entries and audit logs are never updated once written.
APPEND_ONLY = frozenset({SyncTable.LEDGER_ENTRIES, SyncTable.AUDIT_LOGS})

# Declaration order inside a tier is kept stable for deterministic passes.
SYNC_ORDER: List[SyncTable] = sorted(SyncTable, key=lambda t: TIERS[t])
SYNC_ORDER_NAMES: List[str] = [table.value for table in SYNC_ORDER]


def _check_tiers() -> None:
    for table, fields in DEPENDENCY_FIELDS.items():
        for dep in fields:
            if TIERS[dep.table] >= TIERS[table]:
                raise RuntimeError(
                    f"Table {table.value} (tier {TIERS[table]}) references "
                    f"{dep.table.value} (tier {TIERS[dep.table]}); "
                    "references must point to a lower tier"
                )


_check_tiers()


def order_tables(names: Iterable[Union[str, SyncTable]]) -> List[SyncTable]:
    """Validate table names and return them in ascending tier order.

    Duplicates are collapsed. Any unknown name rejects the whole request
    with ``InvalidTable`` rather than being skipped.
    """
    requested = {SyncTable.parse(name) for name in names}
    return [table for table in SYNC_ORDER if table in requested]


def all_dependencies(table: SyncTable) -> List[SyncTable]:
    """Transitive closure of the tables ``table`` depends on."""
    result: List[SyncTable] = []
    stack = list(table.dependencies)
    while stack:
        dep = stack.pop(0)
        if dep in result:
            continue
        result.append(dep)
        stack.extend(dep.dependencies)
    return result


def dependent_tables(table: SyncTable) -> List[SyncTable]:
    """Tables that directly reference ``table``."""
    return [
        other for other in SYNC_ORDER
        if any(dep.table is table for dep in other.dependency_fields)
    ]


__all__ = [
    "APPEND_ONLY",
    "DependencyField",
    "SyncTable",
    "SYNC_ORDER",
    "SYNC_ORDER_NAMES",
    "all_dependencies",
    "dependent_tables",
    "order_tables",
]
