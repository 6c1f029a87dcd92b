"""Immutable records returned by the entity store and held in the cache.

The store never hands ORM rows to callers. Each table has a frozen dataclass
counterpart plus an explicit ``serialize_*``/``deserialize_*`` pair that turns
it into JSON-compatible data and back. Decimals travel as strings and
timestamps as ISO-8601 with an offset so that a record read back from the
cache compares equal to the record the store produced.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Generic, List, Mapping, NamedTuple, Optional, Tuple, TypeVar

from .constants import EntityKind


R = TypeVar("R")


@dataclass(frozen=True)
class ProductRecord:
    """Catalogue entry with its current stock level."""

    id: int
    name: str
    price: Decimal
    available_quantity: int
    description: Optional[str] = None


@dataclass(frozen=True)
class CustomerRecord:
    """Customer contact details."""

    id: int
    email: str
    first_name: str
    last_name: str
    address: Optional[str] = None
    phone_number: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


@dataclass(frozen=True)
class SaleLineRecord:
    """One product line of a bill, priced at the moment of sale."""

    id: int
    bill_id: int
    product_id: int
    product_name: str
    quantity: int
    sale_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.sale_price * self.quantity


@dataclass(frozen=True)
class BillRecord:
    """Persisted bill together with its ordered sale lines."""

    id: int
    customer_id: int
    created_at: datetime
    total_amount: Decimal
    lines: Tuple[SaleLineRecord, ...] = ()


@dataclass(frozen=True)
class Page(Generic[R]):
    """One window of a listing plus the total number of rows."""

    data: Tuple[R, ...]
    count: int


def _money(raw: Any) -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal("0.00")


def _optional_text(raw: Any) -> Optional[str]:
    return str(raw) if raw is not None else None


def to_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def serialize_product(record: ProductRecord) -> Dict[str, Any]:
    """Convert a product record into a JSON-compatible mapping."""

    return {
        "id": record.id,
        "name": record.name,
        "description": record.description,
        "price": str(record.price),
        "available_quantity": record.available_quantity,
    }


def deserialize_product(payload: Mapping[str, Any]) -> ProductRecord:
    """Rebuild a product record from :func:`serialize_product` output."""

    return ProductRecord(
        id=int(payload["id"]),
        name=str(payload["name"]),
        description=_optional_text(payload.get("description")),
        price=_money(payload["price"]),
        available_quantity=int(payload["available_quantity"]),
    )


def serialize_customer(record: CustomerRecord) -> Dict[str, Any]:
    """Convert a customer record into a JSON-compatible mapping."""

    return {
        "id": record.id,
        "email": record.email,
        "first_name": record.first_name,
        "last_name": record.last_name,
        "address": record.address,
        "phone_number": record.phone_number,
    }


def deserialize_customer(payload: Mapping[str, Any]) -> CustomerRecord:
    """Rebuild a customer record from :func:`serialize_customer` output."""

    return CustomerRecord(
        id=int(payload["id"]),
        email=str(payload["email"]),
        first_name=str(payload["first_name"]),
        last_name=str(payload["last_name"]),
        address=_optional_text(payload.get("address")),
        phone_number=_optional_text(payload.get("phone_number")),
    )


def serialize_sale_line(record: SaleLineRecord) -> Dict[str, Any]:
    """Convert a sale line into a JSON-compatible mapping."""

    return {
        "id": record.id,
        "bill_id": record.bill_id,
        "product_id": record.product_id,
        "product_name": record.product_name,
        "quantity": record.quantity,
        "sale_price": str(record.sale_price),
    }


def deserialize_sale_line(payload: Mapping[str, Any]) -> SaleLineRecord:
    """Rebuild a sale line from :func:`serialize_sale_line` output."""

    return SaleLineRecord(
        id=int(payload["id"]),
        bill_id=int(payload["bill_id"]),
        product_id=int(payload["product_id"]),
        product_name=str(payload["product_name"]),
        quantity=int(payload["quantity"]),
        sale_price=_money(payload["sale_price"]),
    )


def serialize_bill(record: BillRecord) -> Dict[str, Any]:
    """Convert a bill and its lines into a JSON-compatible mapping.

    The timestamp is normalised to UTC before formatting so that the
    deserialised value compares equal to the original.
    """

    return {
        "id": record.id,
        "customer_id": record.customer_id,
        "created_at": to_utc(record.created_at).isoformat(),
        "total_amount": str(record.total_amount),
        "lines": [serialize_sale_line(line) for line in record.lines],
    }


def deserialize_bill(payload: Mapping[str, Any]) -> BillRecord:
    """Rebuild a bill from :func:`serialize_bill` output."""

    return BillRecord(
        id=int(payload["id"]),
        customer_id=int(payload["customer_id"]),
        created_at=to_utc(datetime.fromisoformat(str(payload["created_at"]))),
        total_amount=_money(payload["total_amount"]),
        lines=tuple(deserialize_sale_line(line) for line in payload.get("lines", ())),
    )


class RecordCodec(NamedTuple):
    """Serializer/deserializer pair for one entity kind."""

    serialize: Callable[[Any], Dict[str, Any]]
    deserialize: Callable[[Mapping[str, Any]], Any]


CODECS: Dict[EntityKind, RecordCodec] = {
    EntityKind.PRODUCT: RecordCodec(serialize_product, deserialize_product),
    EntityKind.CUSTOMER: RecordCodec(serialize_customer, deserialize_customer),
    EntityKind.BILL: RecordCodec(serialize_bill, deserialize_bill),
    EntityKind.SALE_LINE: RecordCodec(serialize_sale_line, deserialize_sale_line),
}


def codec_for(kind: EntityKind) -> RecordCodec:
    """Return the codec registered for ``kind``."""

    return CODECS[kind]


def serialize_page(page: Page[Any], codec: RecordCodec) -> Dict[str, Any]:
    return {"data": [codec.serialize(item) for item in page.data], "count": page.count}


def deserialize_page(payload: Mapping[str, Any], codec: RecordCodec) -> Page[Any]:
    items: List[Any] = [codec.deserialize(item) for item in payload["data"]]
    return Page(data=tuple(items), count=int(payload["count"]))
