"""Tests for table tiers and dependency ordering."""

from __future__ import annotations

import pytest

from tillsync.errors import InvalidTable
from tillsync.sync.tables import (
    SYNC_ORDER,
    SyncTable,
    all_dependencies,
    dependent_tables,
    order_tables,
)


def test_sync_order_is_ascending_by_tier():
    tiers = [table.tier for table in SYNC_ORDER]

    assert tiers == sorted(tiers)
    assert SYNC_ORDER[-1] is SyncTable.AUDIT_LOGS


def test_every_reference_points_to_a_lower_tier():
    for table in SyncTable:
        for dep in table.dependency_fields:
            assert dep.table.tier < table.tier


def test_order_tables_sorts_and_collapses_duplicates():
    ordered = order_tables(["payments", "customers", "jobs", "customers"])

    assert ordered == [SyncTable.CUSTOMERS, SyncTable.JOBS, SyncTable.PAYMENTS]


def test_order_tables_rejects_unknown_name():
    with pytest.raises(InvalidTable) as excinfo:
        order_tables(["customers", "invoices"])

    assert "invoices" in excinfo.value.message
    assert excinfo.value.status_code == 400


def test_jobs_require_customer_and_service():
    fields = {dep.field: dep for dep in SyncTable.JOBS.dependency_fields}

    assert fields["customer_id"].required is True
    assert fields["service_id"].table is SyncTable.SERVICE_TYPES


def test_payment_references_are_optional():
    assert all(not dep.required for dep in SyncTable.PAYMENTS.dependency_fields)


def test_transitive_dependencies_and_dependents():
    assert set(all_dependencies(SyncTable.PAYMENTS)) == {
        SyncTable.CUSTOMERS,
        SyncTable.JOBS,
        SyncTable.SERVICE_TYPES,
    }
    assert SyncTable.JOBS in dependent_tables(SyncTable.CUSTOMERS)
    assert SyncTable.LEDGER_ENTRIES in dependent_tables(SyncTable.CUSTOMERS)


def test_append_only_tables():
    assert SyncTable.LEDGER_ENTRIES.append_only
    assert SyncTable.AUDIT_LOGS.append_only
    assert not SyncTable.CUSTOMERS.append_only
