"""
Entity store contract. A store hands out units of work; everything done through a
unit commits together on clean exit and is discarded if the body raises.
"""
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from enum import Enum

from studio_lifecycle.errors import DuplicateKey, DuplicateRelation, LifecycleError
from studio_lifecycle.models import AuditLog, Entity, Invoice, Payment
from studio_lifecycle.statuses import EntityType

# Unique columns per entity type and the error a violation maps to.
# The two 1:1 foreign keys surface as DuplicateRelation, plain unique columns as DuplicateKey.
UNIQUE_FIELDS: dict[EntityType, dict[str, type[LifecycleError]]] = {
    EntityType.USER: {"email": DuplicateKey},
    EntityType.CUSTOMER: {"email": DuplicateKey},
    EntityType.APPOINTMENT: {"tattoo_request_id": DuplicateRelation},
    EntityType.INVOICE: {"invoice_number": DuplicateKey, "appointment_id": DuplicateRelation},
    EntityType.PAYMENT: {"square_payment_id": DuplicateKey},
}

FOREIGN_KEYS: dict[EntityType, dict[str, EntityType]] = {
    EntityType.TATTOO_REQUEST: {"customer_id": EntityType.CUSTOMER, "artist_id": EntityType.USER},
    EntityType.APPOINTMENT: {
        "customer_id": EntityType.CUSTOMER,
        "artist_id": EntityType.USER,
        "tattoo_request_id": EntityType.TATTOO_REQUEST,
    },
    EntityType.IMAGE: {"tattoo_request_id": EntityType.TATTOO_REQUEST},
    EntityType.PAYMENT: {
        "customer_id": EntityType.CUSTOMER,
        "appointment_id": EntityType.APPOINTMENT,
        "invoice_id": EntityType.INVOICE,
    },
    EntityType.INVOICE: {"customer_id": EntityType.CUSTOMER, "appointment_id": EntityType.APPOINTMENT},
}


class StoreUnit(ABC):
    """One atomic unit of reads and writes against the store."""

    @abstractmethod
    async def get(self, entity_type: EntityType, entity_id: str) -> Entity | None:
        ...

    @abstractmethod
    async def find_by(self, entity_type: EntityType, field: str, value) -> Entity | None:
        """First row whose unique or foreign-key column `field` equals `value`."""

    @abstractmethod
    async def insert(self, entity: Entity) -> Entity:
        """Raises DuplicateKey / DuplicateRelation on unique violations, NotFound on dangling FKs."""

    @abstractmethod
    async def compare_and_swap_status(
        self,
        entity_type: EntityType,
        entity_id: str,
        expected_status: Enum,
        new_status: Enum,
    ) -> Entity:
        """Write new_status only if the row is still at expected_status, else ConcurrentModification."""

    @abstractmethod
    async def append_audit(self, entry: AuditLog) -> None:
        ...

    @abstractmethod
    async def sum_succeeded_payments(self, invoice_id: str) -> float:
        """The counted payments must not change status before this unit commits."""

    @abstractmethod
    async def list_overdue_candidates(self, now: datetime) -> list[Invoice]:
        """SENT invoices whose due_date is before now."""

    @abstractmethod
    async def list_audit(self, resource: str, resource_id: str) -> list[AuditLog]:
        """Audit rows for one resource, oldest first."""

    async def find_payment_by_square_id(self, square_payment_id: str) -> Payment | None:
        return await self.find_by(EntityType.PAYMENT, "square_payment_id", square_payment_id)


class EntityStore(ABC):
    @abstractmethod
    def unit(self) -> AbstractAsyncContextManager[StoreUnit]:
        ...

    async def close(self) -> None:
        return None
