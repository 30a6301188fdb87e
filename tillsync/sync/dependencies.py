"""Foreign-key dependency checks against a record store."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .records import Record, snake_case
from .tables import SyncTable, all_dependencies, dependent_tables

if TYPE_CHECKING:
    from .store import RecordStore

logger = logging.getLogger("tillsync.sync.dependencies")

RecordLike = Union[Record, Mapping[str, Any]]


@dataclass
class DependencyReport:
    """Which referenced records a set of stored records needs, and which are absent."""

    table: SyncTable
    record_ids: List[str]
    required: Dict[str, List[str]] = field(default_factory=dict)
    missing: Dict[str, List[Optional[str]]] = field(default_factory=dict)
    per_record: Dict[str, Dict[str, List[Optional[str]]]] = field(default_factory=dict)
    not_found: List[str] = field(default_factory=list)

    @property
    def all_exist(self) -> bool:
        return not self.missing

    def ready(self, record_id: str) -> bool:
        return not self.per_record.get(record_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tableName": self.table.value,
            "recordIds": self.record_ids,
            "required": self.required,
            "missing": self.missing,
            "perRecord": self.per_record,
            "notFound": self.not_found,
            "allDependenciesExist": self.all_exist,
        }


def _field_values(record: RecordLike) -> Mapping[str, Any]:
    if isinstance(record, Record):
        return record.payload
    return {snake_case(str(key)): value for key, value in record.items()}


class DependencyResolver:
    """Answers "can this record be applied yet?" for a given store. Read-only."""

    def __init__(self, store: "RecordStore"):
        self.store = store

    def references(self, table: SyncTable, record: RecordLike) -> Dict[str, List[Optional[str]]]:
        """Referenced ids per dependency table; ``None`` marks a null required field."""
        table = SyncTable.parse(table)
        values = _field_values(record)
        refs: Dict[str, List[Optional[str]]] = {}
        for dep in table.dependency_fields:
            value = values.get(dep.field)
            if value in (None, ""):
                if dep.required:
                    refs.setdefault(dep.table.value, []).append(None)
                continue
            ids = refs.setdefault(dep.table.value, [])
            if str(value) not in ids:
                ids.append(str(value))
        return refs

    def missing_for(self, table: SyncTable, record: RecordLike) -> Dict[str, List[Optional[str]]]:
        """Dependencies of a single (possibly not yet stored) record that are absent."""
        missing: Dict[str, List[Optional[str]]] = {}
        for dep_table, ids in self.references(table, record).items():
            wanted = [rid for rid in ids if rid is not None]
            present = self.store.existing_ids(SyncTable(dep_table), wanted)
            absent = [rid for rid in ids if rid is None or rid not in present]
            if absent:
                missing[dep_table] = absent
        return missing

    def check(self, table: Union[str, SyncTable], record_ids: Iterable[str]) -> DependencyReport:
        """Report missing dependencies for records already in the store."""
        table = SyncTable.parse(table)
        ids = [str(rid).strip() for rid in record_ids if str(rid).strip()]
        report = DependencyReport(table=table, record_ids=ids)
        if not table.dependency_fields:
            return report

        records = self.store.get_many(table, ids)
        found = {record.id for record in records}
        report.not_found = [rid for rid in ids if rid not in found]

        for record in records:
            refs = self.references(table, record)
            for dep_table, dep_ids in refs.items():
                bucket = report.required.setdefault(dep_table, [])
                for dep_id in dep_ids:
                    if dep_id is not None and dep_id not in bucket:
                        bucket.append(dep_id)
            missing = self.missing_for(table, record)
            if missing:
                report.per_record[record.id] = missing
                for dep_table, dep_ids in missing.items():
                    bucket = report.missing.setdefault(dep_table, [])
                    for dep_id in dep_ids:
                        if dep_id not in bucket:
                            bucket.append(dep_id)
        logger.debug(
            "Dependency check on %s for %d record(s): missing %s",
            table.value, len(ids), report.missing or "nothing",
        )
        return report

    def fetch(self, table: Union[str, SyncTable], record_ids: Iterable[str]) -> Dict[str, List[Dict[str, Any]]]:
        """The dependency records themselves, grouped by table."""
        table = SyncTable.parse(table)
        dependencies: Dict[str, List[Dict[str, Any]]] = {}
        if not table.dependency_fields:
            return dependencies

        wanted: Dict[str, List[str]] = {}
        for record in self.store.get_many(table, list(record_ids)):
            for dep_table, dep_ids in self.references(table, record).items():
                bucket = wanted.setdefault(dep_table, [])
                bucket.extend(rid for rid in dep_ids if rid is not None and rid not in bucket)

        for dep_table, dep_ids in wanted.items():
            if dep_ids:
                rows = self.store.get_many(SyncTable(dep_table), dep_ids)
                dependencies[dep_table] = [row.to_dict() for row in rows]
        return dependencies

    def check_ids(self, table: Union[str, SyncTable], ids: Iterable[str]) -> Tuple[List[str], List[str]]:
        """Split ``ids`` into (existing, missing) for ``table``."""
        table = SyncTable.parse(table)
        id_list = [str(rid) for rid in ids if rid]
        present = self.store.existing_ids(table, id_list)
        return (
            [rid for rid in id_list if rid in present],
            [rid for rid in id_list if rid not in present],
        )

    @staticmethod
    def info(table: Union[str, SyncTable]) -> Dict[str, Any]:
        table = SyncTable.parse(table)
        deps = [dep.value for dep in table.dependencies]
        return {
            "tableName": table.value,
            "tier": table.tier,
            "dependencies": deps,
            "hasDependencies": bool(deps),
            "fields": [
                {"field": dep.field, "table": dep.table.value, "required": dep.required}
                for dep in table.dependency_fields
            ],
            "allDependencies": [dep.value for dep in all_dependencies(table)],
            "dependents": [dep.value for dep in dependent_tables(table)],
            "appendOnly": table.append_only,
        }


__all__ = ["DependencyReport", "DependencyResolver"]
