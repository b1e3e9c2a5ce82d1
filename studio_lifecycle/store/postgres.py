"""
Async Postgres entity store: one table per entity type + audit_logs.
Each unit is a single transaction. Status writes are compare-and-swap
(UPDATE ... WHERE status = expected); unique indexes back the application-level checks.
"""
import json
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum

import asyncpg
from asyncpg.exceptions import ForeignKeyViolationError, UniqueViolationError

from studio_lifecycle.config import settings
from studio_lifecycle.errors import (
    ConcurrentModification,
    DuplicateKey,
    DuplicateRelation,
    LifecycleError,
    NotFound,
    StoreError,
)
from studio_lifecycle.models import MODEL_FOR, AuditLog, Entity, Invoice
from studio_lifecycle.statuses import EntityType, InvoiceStatus, PaymentStatus
from studio_lifecycle.store.base import EntityStore, StoreUnit

TABLES: dict[EntityType, str] = {
    EntityType.USER: "users",
    EntityType.CUSTOMER: "customers",
    EntityType.TATTOO_REQUEST: "tattoo_requests",
    EntityType.APPOINTMENT: "appointments",
    EntityType.IMAGE: "images",
    EntityType.PAYMENT: "payments",
    EntityType.INVOICE: "invoices",
}

# Unique index name -> error raised on violation
UNIQUE_CONSTRAINTS: dict[str, type[LifecycleError]] = {
    "users_email_key": DuplicateKey,
    "customers_email_key": DuplicateKey,
    "payments_square_payment_id_key": DuplicateKey,
    "invoices_invoice_number_key": DuplicateKey,
    "appointments_tattoo_request_id_key": DuplicateRelation,
    "invoices_appointment_id_key": DuplicateRelation,
}

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        name TEXT,
        role TEXT NOT NULL DEFAULT 'USER',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT users_email_key UNIQUE (email)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS customers (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        phone TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT customers_email_key UNIQUE (email)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS tattoo_requests (
        id TEXT PRIMARY KEY,
        customer_id TEXT NOT NULL REFERENCES customers(id) ON DELETE CASCADE,
        artist_id TEXT REFERENCES users(id) ON DELETE SET NULL,
        status TEXT NOT NULL DEFAULT 'PENDING',
        description TEXT,
        placement TEXT,
        size TEXT,
        style TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS appointments (
        id TEXT PRIMARY KEY,
        customer_id TEXT NOT NULL REFERENCES customers(id) ON DELETE CASCADE,
        artist_id TEXT REFERENCES users(id) ON DELETE SET NULL,
        tattoo_request_id TEXT REFERENCES tattoo_requests(id) ON DELETE SET NULL,
        date_time TIMESTAMPTZ NOT NULL,
        duration_minutes INT NOT NULL DEFAULT 60,
        status TEXT NOT NULL DEFAULT 'PENDING',
        notes TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT appointments_tattoo_request_id_key UNIQUE (tattoo_request_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS images (
        id TEXT PRIMARY KEY,
        cloudinary_url TEXT NOT NULL,
        public_id TEXT,
        tattoo_request_id TEXT REFERENCES tattoo_requests(id) ON DELETE SET NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS invoices (
        id TEXT PRIMARY KEY,
        customer_id TEXT NOT NULL REFERENCES customers(id) ON DELETE CASCADE,
        appointment_id TEXT REFERENCES appointments(id) ON DELETE SET NULL,
        invoice_number TEXT NOT NULL,
        amount_due DOUBLE PRECISION NOT NULL CHECK (amount_due >= 0),
        status TEXT NOT NULL DEFAULT 'DRAFT',
        due_date TIMESTAMPTZ,
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT invoices_invoice_number_key UNIQUE (invoice_number),
        CONSTRAINT invoices_appointment_id_key UNIQUE (appointment_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        id TEXT PRIMARY KEY,
        customer_id TEXT NOT NULL REFERENCES customers(id) ON DELETE CASCADE,
        appointment_id TEXT REFERENCES appointments(id) ON DELETE SET NULL,
        invoice_id TEXT REFERENCES invoices(id) ON DELETE SET NULL,
        amount DOUBLE PRECISION NOT NULL CHECK (amount >= 0),
        status TEXT NOT NULL DEFAULT 'PENDING',
        square_payment_id TEXT,
        payment_method TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT payments_square_payment_id_key UNIQUE (square_payment_id)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_payments_invoice_id ON payments(invoice_id);",
    "CREATE INDEX IF NOT EXISTS idx_invoices_status_due_date ON invoices(status, due_date);",
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        id TEXT PRIMARY KEY,
        action TEXT NOT NULL,
        resource TEXT NOT NULL,
        resource_id TEXT,
        user_id TEXT,
        details JSONB NOT NULL DEFAULT '{}',
        "timestamp" TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_logs_resource ON audit_logs(resource, resource_id);",
)


def classify_unique_violation(constraint_name: str | None, detail: str = "") -> LifecycleError:
    error_cls = UNIQUE_CONSTRAINTS.get(constraint_name or "", DuplicateKey)
    return error_cls(detail or f"unique constraint {constraint_name} violated", constraint=constraint_name)


def translate_error(exc: BaseException) -> LifecycleError:
    """Map a driver exception onto the lifecycle error taxonomy."""
    if isinstance(exc, UniqueViolationError):
        return classify_unique_violation(getattr(exc, "constraint_name", None), getattr(exc, "detail", "") or "")
    if isinstance(exc, ForeignKeyViolationError):
        return NotFound(getattr(exc, "detail", "") or "referenced row not found", constraint=getattr(exc, "constraint_name", None))
    return StoreError(f"{type(exc).__name__}: {exc}")


def _column_values(entity: Entity) -> dict:
    data = entity.model_dump(exclude={"entity_type"})
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in data.items()}


def _to_entity(entity_type: EntityType, row: asyncpg.Record | None) -> Entity | None:
    if row is None:
        return None
    return MODEL_FOR[entity_type](**dict(row))


def _to_audit(row: asyncpg.Record) -> AuditLog:
    data = dict(row)
    details = data.get("details")
    if isinstance(details, str):
        data["details"] = json.loads(details)
    return AuditLog(**data)


class PostgresUnit(StoreUnit):
    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn

    async def get(self, entity_type: EntityType, entity_id: str) -> Entity | None:
        entity_type = EntityType(entity_type)
        row = await self._conn.fetchrow(f"SELECT * FROM {TABLES[entity_type]} WHERE id = $1;", entity_id)
        return _to_entity(entity_type, row)

    async def find_by(self, entity_type: EntityType, field: str, value) -> Entity | None:
        entity_type = EntityType(entity_type)
        if field not in MODEL_FOR[entity_type].model_fields or field == "entity_type":
            raise ValueError(f"{entity_type.value} has no column {field}")
        row = await self._conn.fetchrow(
            f"SELECT * FROM {TABLES[entity_type]} WHERE {field} = $1 LIMIT 1;",
            value,
        )
        return _to_entity(entity_type, row)

    async def insert(self, entity: Entity) -> Entity:
        values = _column_values(entity)
        columns = list(values)
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        row = await self._conn.fetchrow(
            f"INSERT INTO {TABLES[entity.entity_type]} ({', '.join(columns)}) VALUES ({placeholders}) RETURNING *;",
            *values.values(),
        )
        return _to_entity(entity.entity_type, row)

    async def compare_and_swap_status(
        self,
        entity_type: EntityType,
        entity_id: str,
        expected_status: Enum,
        new_status: Enum,
    ) -> Entity:
        entity_type = EntityType(entity_type)
        table = TABLES[entity_type]
        row = await self._conn.fetchrow(
            f"""
            UPDATE {table} SET status = $1, updated_at = NOW()
            WHERE id = $2 AND status = $3
            RETURNING *;
            """,
            new_status.value,
            entity_id,
            expected_status.value,
        )
        if row is None:
            current = await self._conn.fetchval(f"SELECT status FROM {table} WHERE id = $1;", entity_id)
            if current is None:
                raise NotFound(f"{entity_type.value} {entity_id} not found", entity_id=entity_id)
            raise ConcurrentModification(
                f"{entity_type.value} {entity_id} is {current}, expected {expected_status.value}",
                entity_id=entity_id,
            )
        return _to_entity(entity_type, row)

    async def append_audit(self, entry: AuditLog) -> None:
        await self._conn.execute(
            """
            INSERT INTO audit_logs (id, action, resource, resource_id, user_id, details, "timestamp")
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7);
            """,
            entry.id,
            entry.action,
            entry.resource,
            entry.resource_id,
            entry.user_id,
            json.dumps(entry.details, default=str),
            entry.timestamp,
        )

    async def sum_succeeded_payments(self, invoice_id: str) -> float:
        # FOR SHARE holds off a concurrent refund/failure of these rows until this unit ends
        rows = await self._conn.fetch(
            "SELECT amount FROM payments WHERE invoice_id = $1 AND status = $2 FOR SHARE;",
            invoice_id,
            PaymentStatus.SUCCEEDED.value,
        )
        return float(sum(r["amount"] for r in rows))

    async def list_overdue_candidates(self, now: datetime) -> list[Invoice]:
        rows = await self._conn.fetch(
            """
            SELECT * FROM invoices
            WHERE status = $1 AND due_date IS NOT NULL AND due_date < $2
            ORDER BY due_date ASC;
            """,
            InvoiceStatus.SENT.value,
            now,
        )
        return [_to_entity(EntityType.INVOICE, r) for r in rows]

    async def list_audit(self, resource: str, resource_id: str) -> list[AuditLog]:
        rows = await self._conn.fetch(
            """
            SELECT * FROM audit_logs
            WHERE resource = $1 AND resource_id = $2
            ORDER BY "timestamp" ASC;
            """,
            resource,
            resource_id,
        )
        return [_to_audit(r) for r in rows]


class PostgresStore(EntityStore):
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    @classmethod
    async def connect(cls, database_url: str | None = None) -> "PostgresStore":
        pool = await asyncpg.create_pool(
            database_url or settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            command_timeout=settings.db_command_timeout,
        )
        return cls(pool)

    @asynccontextmanager
    async def unit(self):
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    yield PostgresUnit(conn)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise translate_error(e) from e

    async def close(self) -> None:
        await self._pool.close()


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in SCHEMA_STATEMENTS:
                await conn.execute(statement)
