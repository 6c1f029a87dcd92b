"""Entity store: relational persistence behind the cache-aside services.

This module owns every SQLAlchemy interaction. Its public API is designed
around three responsibilities:

1. Database lifecycle: building the async engine, opening transactions and
   creating the schema (:class:`Database`).
2. Generic record access: one :class:`EntityStore` implementation shared by
   all entity kinds and configured by an :class:`EntityMapping`.
3. Sale writes: the conditional stock decrement and the bill insert used by
   the sale orchestrator inside a single transaction.

Integrity failures are classified here into the domain taxonomy. No raw
SQLAlchemy exception leaves this module.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Callable, Dict, Generic, List, Mapping, Optional, Sequence, Tuple, TypeVar

from sqlalchemy import delete, event, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.interfaces import LoaderOption

from . import log
from .constants import MONEY_QUANTUM, EntityKind
from .errors import (
    AppError,
    DatabaseError,
    DuplicateRecordError,
    ForeignKeyViolationError,
    NotFoundError,
    ValidationError,
)
from .models import Base, BillRow, CustomerRow, ProductRow, SaleLineRow
from .records import (
    BillRecord,
    CustomerRecord,
    Page,
    ProductRecord,
    SaleLineRecord,
    to_utc,
)


R = TypeVar("R")

UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"
CHECK_VIOLATION = "23514"


# ---------------------------------------------------------------------------
# Database lifecycle
# ---------------------------------------------------------------------------


class Database:
    """Own the async engine and hand out transactional sessions."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self._sessions = async_sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, **engine_options: Any) -> "Database":
        """Create the engine for ``url``; SQLite connections enforce foreign keys."""

        engine = create_async_engine(url, **engine_options)
        if engine.dialect.name == "sqlite":
            event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        log.info("Database engine created for dialect '%s'", engine.dialect.name)
        return cls(engine)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Yield a session whose work commits on exit and rolls back on error."""

        async with self._sessions() as session:
            async with session.begin():
                yield session

    async def create_schema(self) -> None:
        async with self.engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
        log.info("Database schema is up to date")

    async def dispose(self) -> None:
        await self.engine.dispose()


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def _sqlstate(error: IntegrityError) -> Optional[str]:
    original = error.orig
    for attribute in ("sqlstate", "pgcode"):
        code = getattr(original, attribute, None)
        if isinstance(code, str):
            return code
    return None


def classify_integrity_error(
    error: IntegrityError,
    action: str,
    *,
    foreign_key_message: Optional[str] = None,
) -> AppError:
    """Map an ``IntegrityError`` onto the domain taxonomy.

    Args:
        error (IntegrityError): Failure raised by SQLAlchemy.
        action (str): Short description of the attempted operation, used in
            the fallback message.
        foreign_key_message (str | None): Message for foreign key violations;
            deletes use a more specific wording than inserts.

    Returns:
        AppError: :class:`DuplicateRecordError` for unique violations,
            :class:`ForeignKeyViolationError` for referential violations,
            :class:`ValidationError` for check constraints and
            :class:`DatabaseError` for anything else.
    """

    code = _sqlstate(error)
    detail = str(error.orig)
    if code == UNIQUE_VIOLATION or "UNIQUE constraint failed" in detail:
        return DuplicateRecordError(metadata=detail)
    if code == FOREIGN_KEY_VIOLATION or "FOREIGN KEY constraint failed" in detail:
        return ForeignKeyViolationError(foreign_key_message, detail)
    if code == CHECK_VIOLATION or "CHECK constraint failed" in detail:
        return ValidationError("Value violates a data constraint", detail)
    return DatabaseError(f"Error {action}", detail)


@asynccontextmanager
async def translate_errors(
    action: str,
    *,
    foreign_key_message: Optional[str] = None,
) -> AsyncIterator[None]:
    """Re-raise SQLAlchemy failures inside the block as domain errors."""

    try:
        yield
    except AppError:
        raise
    except IntegrityError as exc:
        mapped = classify_integrity_error(exc, action, foreign_key_message=foreign_key_message)
        log.error("Integrity failure while %s: %s", action, mapped.message)
        raise mapped from exc
    except SQLAlchemyError as exc:
        log.error("Database failure while %s: %s", action, exc)
        raise DatabaseError(f"Error {action}", str(exc)) from exc


# ---------------------------------------------------------------------------
# Row to record conversion
# ---------------------------------------------------------------------------


def product_to_record(row: ProductRow) -> ProductRecord:
    return ProductRecord(
        id=row.id,
        name=row.name,
        description=row.description,
        price=Decimal(row.price),
        available_quantity=row.available_quantity,
    )


def customer_to_record(row: CustomerRow) -> CustomerRecord:
    return CustomerRecord(
        id=row.id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        address=row.address,
        phone_number=row.phone_number,
    )


def sale_line_to_record(row: SaleLineRow) -> SaleLineRecord:
    return SaleLineRecord(
        id=row.id,
        bill_id=row.bill_id,
        product_id=row.product_id,
        product_name=row.product.name,
        quantity=row.quantity,
        sale_price=Decimal(row.sale_price),
    )


def bill_to_record(row: BillRow) -> BillRecord:
    return BillRecord(
        id=row.id,
        customer_id=row.customer_id,
        created_at=to_utc(row.created_at),
        total_amount=Decimal(row.total_amount),
        lines=tuple(sale_line_to_record(line) for line in sorted(row.lines, key=lambda line: line.id)),
    )


# ---------------------------------------------------------------------------
# Generic store
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EntityMapping(Generic[R]):
    """Tie an entity kind to its table, record converter and eager loads."""

    kind: EntityKind
    model: type
    to_record: Callable[[Any], R]
    load_options: Tuple[LoaderOption, ...] = ()


PRODUCTS: EntityMapping[ProductRecord] = EntityMapping(EntityKind.PRODUCT, ProductRow, product_to_record)
CUSTOMERS: EntityMapping[CustomerRecord] = EntityMapping(EntityKind.CUSTOMER, CustomerRow, customer_to_record)
BILLS: EntityMapping[BillRecord] = EntityMapping(
    EntityKind.BILL,
    BillRow,
    bill_to_record,
    (selectinload(BillRow.lines).selectinload(SaleLineRow.product),),
)
SALE_LINES: EntityMapping[SaleLineRecord] = EntityMapping(
    EntityKind.SALE_LINE,
    SaleLineRow,
    sale_line_to_record,
    (selectinload(SaleLineRow.product),),
)


class EntityStore(Generic[R]):
    """CRUD and listing over one table, returning immutable records.

    Every method accepts an optional ``session``. When given, the work joins
    the caller's transaction; otherwise the store opens and commits its own.
    Absence on reads is reported as ``None``; absence on update or delete is a
    :class:`NotFoundError`.
    """

    def __init__(self, database: Database, mapping: EntityMapping[R]) -> None:
        self.database = database
        self.mapping = mapping
        self._columns = frozenset(
            column.key for column in mapping.model.__table__.columns if column.key != "id"
        )

    @property
    def kind(self) -> EntityKind:
        return self.mapping.kind

    @asynccontextmanager
    async def _scope(
        self,
        session: Optional[AsyncSession],
        action: str,
        *,
        foreign_key_message: Optional[str] = None,
    ) -> AsyncIterator[AsyncSession]:
        async with translate_errors(action, foreign_key_message=foreign_key_message):
            if session is not None:
                yield session
            else:
                async with self.database.transaction() as own:
                    yield own

    def _check_fields(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        unknown = sorted(set(values) - self._columns)
        if unknown:
            raise ValidationError(
                f"Unknown {self.kind.value} field(s): {', '.join(unknown)}",
                {"fields": unknown},
            )
        return dict(values)

    def _select(self):
        return select(self.mapping.model).options(*self.mapping.load_options)

    async def _load(self, session: AsyncSession, entity_id: int) -> Optional[R]:
        statement = (
            self._select()
            .where(self.mapping.model.id == entity_id)
            .execution_options(populate_existing=True)
        )
        row = (await session.execute(statement)).scalar_one_or_none()
        return self.mapping.to_record(row) if row is not None else None

    async def create(self, values: Mapping[str, Any], *, session: Optional[AsyncSession] = None) -> R:
        """Insert a row built from ``values`` and return the stored record."""

        fields = self._check_fields(values)
        async with self._scope(session, f"creating {self.kind.value}") as active:
            row = self.mapping.model(**fields)
            active.add(row)
            await active.flush()
            record = await self._load(active, row.id)
        log.info("Created %s with id %s", self.kind.value, row.id)
        return record

    async def find_by_id(self, entity_id: int, *, session: Optional[AsyncSession] = None) -> Optional[R]:
        async with self._scope(session, f"reading {self.kind.value}") as active:
            return await self._load(active, entity_id)

    async def find_one_by(self, field: str, value: Any, *, session: Optional[AsyncSession] = None) -> Optional[R]:
        """Return the first record whose ``field`` equals ``value``."""

        self._check_fields({field: value})
        column = getattr(self.mapping.model, field)
        statement = self._select().where(column == value).order_by(self.mapping.model.id).limit(1)
        async with self._scope(session, f"reading {self.kind.value} by {field}") as active:
            row = (await active.execute(statement)).scalar_one_or_none()
            return self.mapping.to_record(row) if row is not None else None

    async def find_many_by(self, field: str, value: Any, *, session: Optional[AsyncSession] = None) -> List[R]:
        """Return every record whose ``field`` equals ``value``, ordered by id."""

        self._check_fields({field: value})
        column = getattr(self.mapping.model, field)
        statement = self._select().where(column == value).order_by(self.mapping.model.id)
        async with self._scope(session, f"listing {self.kind.value} by {field}") as active:
            rows = (await active.execute(statement)).scalars().all()
            return [self.mapping.to_record(row) for row in rows]

    async def update(self, entity_id: int, values: Mapping[str, Any], *, session: Optional[AsyncSession] = None) -> R:
        """Apply ``values`` to the row and return the refreshed record.

        Raises:
            ValidationError: If ``values`` is empty or names unknown fields.
            NotFoundError: If no row has ``entity_id``.
        """

        fields = self._check_fields(values)
        if not fields:
            raise ValidationError(f"No {self.kind.value} fields to update")
        model = self.mapping.model
        statement = update(model).where(model.id == entity_id).values(**fields)
        async with self._scope(session, f"updating {self.kind.value}") as active:
            result = await active.execute(statement)
            if result.rowcount == 0:
                log.warning("Update failed, %s %s not found", self.kind.value, entity_id)
                raise NotFoundError(self.kind.label)
            record = await self._load(active, entity_id)
        log.info("Updated %s %s (%s)", self.kind.value, entity_id, ", ".join(sorted(fields)))
        return record

    async def delete(self, entity_id: int, *, session: Optional[AsyncSession] = None) -> bool:
        """Delete the row with ``entity_id``.

        Raises:
            NotFoundError: If no row has ``entity_id``.
            ForeignKeyViolationError: If other rows still reference it.
        """

        model = self.mapping.model
        statement = delete(model).where(model.id == entity_id)
        message = f"Cannot delete {self.kind.label.lower()} due to foreign key constraints"
        async with self._scope(session, f"deleting {self.kind.value}", foreign_key_message=message) as active:
            result = await active.execute(statement)
            if result.rowcount == 0:
                log.warning("Delete failed, %s %s not found", self.kind.value, entity_id)
                raise NotFoundError(self.kind.label)
        log.info("Deleted %s %s", self.kind.value, entity_id)
        return True

    async def find_all(self, *, session: Optional[AsyncSession] = None) -> List[R]:
        statement = self._select().order_by(self.mapping.model.id)
        async with self._scope(session, f"listing {self.kind.value}") as active:
            rows = (await active.execute(statement)).scalars().all()
            return [self.mapping.to_record(row) for row in rows]

    async def find_paginated(self, skip: int, take: int, *, session: Optional[AsyncSession] = None) -> Page[R]:
        """Return ``take`` records after the first ``skip`` plus the total count."""

        statement = self._select().order_by(self.mapping.model.id).offset(skip).limit(take)
        count_statement = select(func.count()).select_from(self.mapping.model)
        async with self._scope(session, f"paginating {self.kind.value}") as active:
            rows = (await active.execute(statement)).scalars().all()
            count = (await active.execute(count_statement)).scalar_one()
            return Page(data=tuple(self.mapping.to_record(row) for row in rows), count=count)


# ---------------------------------------------------------------------------
# Sale writes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SaleLineDraft:
    """Line accepted by the orchestrator, not yet persisted."""

    product_id: int
    quantity: int
    sale_price: Decimal


async def decrement_stock(session: AsyncSession, product_id: int, quantity: int) -> bool:
    """Atomically subtract ``quantity`` from the product's stock.

    The statement only matches while enough stock remains, so two concurrent
    sales cannot both consume the last units.

    Returns:
        bool: ``True`` when the stock was decremented, ``False`` when the
            product is missing or holds fewer than ``quantity`` units.
    """

    statement = (
        update(ProductRow)
        .where(ProductRow.id == product_id, ProductRow.available_quantity >= quantity)
        .values(available_quantity=ProductRow.available_quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    async with translate_errors("updating product stock"):
        result = await session.execute(statement)
    return result.rowcount == 1


async def create_bill(
    session: AsyncSession,
    *,
    customer_id: int,
    lines: Sequence[SaleLineDraft],
    created_at: datetime,
) -> BillRecord:
    """Insert a bill with its lines, then write the total once.

    Runs inside the caller's transaction; nothing is committed here.
    """

    async with translate_errors("saving bill"):
        bill = BillRow(customer_id=customer_id, created_at=created_at, total_amount=Decimal("0.00"))
        prices = [line.sale_price.quantize(MONEY_QUANTUM) for line in lines]
        bill.lines = [
            SaleLineRow(product_id=line.product_id, quantity=line.quantity, sale_price=price)
            for line, price in zip(lines, prices)
        ]
        session.add(bill)
        await session.flush()

        # Total equals the sum of the stored line amounts.
        bill.total_amount = sum((price * line.quantity for line, price in zip(lines, prices)), Decimal("0.00"))
        await session.flush()

        statement = (
            select(BillRow)
            .options(*BILLS.load_options)
            .where(BillRow.id == bill.id)
            .execution_options(populate_existing=True)
        )
        row = (await session.execute(statement)).scalar_one()
        return bill_to_record(row)
