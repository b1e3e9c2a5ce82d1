"""
In-process entity store with the same constraint semantics as the Postgres store.
Single event loop only. Each awaited call yields to the loop so concurrent units interleave
the way they would against a real database. Status writes are optimistic: the expected
status is checked when written and again at commit. Payments read for an invoice
settlement check are re-checked at commit too.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum

from studio_lifecycle.errors import ConcurrentModification, DuplicateKey, NotFound
from studio_lifecycle.models import AuditLog, Entity, Invoice
from studio_lifecycle.statuses import EntityType, InvoiceStatus, PaymentStatus
from studio_lifecycle.store.base import FOREIGN_KEYS, UNIQUE_FIELDS, EntityStore, StoreUnit

logger = logging.getLogger(__name__)

Key = tuple[EntityType, str]


class MemoryUnit(StoreUnit):
    def __init__(self, store: "MemoryStore"):
        self._store = store
        self._pending: dict[Key, Entity] = {}
        self._inserted: set[Key] = set()
        self._expected: dict[Key, Enum] = {}
        # rows read for a decision but not written; must be unchanged at commit
        self._watched: dict[Key, Enum] = {}
        self._audit: list[AuditLog] = []

    async def _io(self) -> None:
        await asyncio.sleep(0)

    def _read(self, entity_type: EntityType, entity_id: str) -> Entity | None:
        key = (entity_type, entity_id)
        if key in self._pending:
            return self._pending[key]
        return self._store._rows[entity_type].get(entity_id)

    def _rows(self, entity_type: EntityType) -> list[Entity]:
        merged = dict(self._store._rows[entity_type])
        for (etype, eid), row in self._pending.items():
            if etype == entity_type:
                merged[eid] = row
        return list(merged.values())

    async def get(self, entity_type: EntityType, entity_id: str) -> Entity | None:
        await self._io()
        return self._read(EntityType(entity_type), entity_id)

    async def find_by(self, entity_type: EntityType, field: str, value) -> Entity | None:
        await self._io()
        for row in self._rows(EntityType(entity_type)):
            if getattr(row, field, None) == value:
                return row
        return None

    async def insert(self, entity: Entity) -> Entity:
        await self._io()
        key = (entity.entity_type, entity.id)
        if self._read(*key) is not None:
            raise DuplicateKey(f"{entity.entity_type.value} {entity.id} already exists", field="id")
        _check_constraints(entity, self._rows, lambda t, i: self._read(t, i) is not None)
        self._pending[key] = entity
        self._inserted.add(key)
        return entity

    async def compare_and_swap_status(
        self,
        entity_type: EntityType,
        entity_id: str,
        expected_status: Enum,
        new_status: Enum,
    ) -> Entity:
        await self._io()
        entity_type = EntityType(entity_type)
        key = (entity_type, entity_id)
        current = self._read(entity_type, entity_id)
        if current is None:
            raise NotFound(f"{entity_type.value} {entity_id} not found", entity_id=entity_id)
        if current.status != expected_status:
            raise ConcurrentModification(
                f"{entity_type.value} {entity_id} is {current.status.value}, expected {expected_status.value}",
                entity_id=entity_id,
            )
        if key not in self._inserted:
            self._expected.setdefault(key, expected_status)
        updated = current.with_status(new_status)
        self._pending[key] = updated
        return updated

    async def append_audit(self, entry: AuditLog) -> None:
        await self._io()
        self._audit.append(entry)

    async def sum_succeeded_payments(self, invoice_id: str) -> float:
        await self._io()
        total = 0.0
        for p in self._rows(EntityType.PAYMENT):
            if p.invoice_id != invoice_id:
                continue
            key = (EntityType.PAYMENT, p.id)
            if key not in self._pending:
                self._watched.setdefault(key, p.status)
            if p.status == PaymentStatus.SUCCEEDED:
                total += p.amount
        return total

    async def list_overdue_candidates(self, now: datetime) -> list[Invoice]:
        await self._io()
        return sorted(
            (
                inv
                for inv in self._rows(EntityType.INVOICE)
                if inv.status == InvoiceStatus.SENT and inv.due_date is not None and inv.due_date < now
            ),
            key=lambda inv: inv.due_date,
        )

    async def list_audit(self, resource: str, resource_id: str) -> list[AuditLog]:
        await self._io()
        entries = list(self._store._audit) + self._audit
        return [e for e in entries if e.resource == resource and e.resource_id == resource_id]

    def commit(self) -> None:
        """Validate against committed state and apply. Synchronous, so never interleaved."""
        committed = self._store._rows
        for (etype, eid), expected in self._expected.items():
            row = committed[etype].get(eid)
            if row is None or row.status != expected:
                raise ConcurrentModification(
                    f"{etype.value} {eid} changed before commit",
                    entity_id=eid,
                )
        for (etype, eid), seen in self._watched.items():
            if (etype, eid) in self._pending:
                continue
            row = committed[etype].get(eid)
            if row is None or row.status != seen:
                raise ConcurrentModification(
                    f"{etype.value} {eid} read as {seen.value} changed before commit",
                    entity_id=eid,
                )
        for key in self._inserted:
            entity = self._pending[key]
            if key[1] in committed[key[0]]:
                raise DuplicateKey(f"{key[0].value} {key[1]} already exists", field="id")
            _check_constraints(
                entity,
                lambda t: list(committed[t].values()),
                lambda t, i: i in committed[t] or (t, i) in self._pending,
            )
        for (etype, eid), row in self._pending.items():
            committed[etype][eid] = row
        self._store._audit.extend(self._audit)
        logger.debug("Committed %d row(s), %d audit entries", len(self._pending), len(self._audit))


def _check_constraints(entity: Entity, rows_of, exists) -> None:
    etype = entity.entity_type
    for field, error_cls in UNIQUE_FIELDS.get(etype, {}).items():
        value = getattr(entity, field)
        if value is None:
            continue
        for other in rows_of(etype):
            if other.id != entity.id and getattr(other, field) == value:
                raise error_cls(
                    f"{etype.value}.{field}={value} already taken",
                    field=field,
                    value=value,
                )
    for field, target in FOREIGN_KEYS.get(etype, {}).items():
        value = getattr(entity, field)
        if value is not None and not exists(target, value):
            raise NotFound(f"{target.value} {value} not found", entity_id=value, field=field)


class MemoryStore(EntityStore):
    def __init__(self):
        self._rows: dict[EntityType, dict[str, Entity]] = {t: {} for t in EntityType}
        self._audit: list[AuditLog] = []

    @asynccontextmanager
    async def unit(self):
        unit = MemoryUnit(self)
        yield unit
        unit.commit()

    @property
    def audit_log(self) -> tuple[AuditLog, ...]:
        return tuple(self._audit)

    def peek(self, entity_type: EntityType, entity_id: str) -> Entity | None:
        """Committed row, outside any unit."""
        return self._rows[EntityType(entity_type)].get(entity_id)
