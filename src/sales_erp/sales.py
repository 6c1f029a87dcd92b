"""Sale transaction orchestrator.

This module turns a sale request into a persisted bill. The workflow runs in
two phases:

1. Inside one store transaction: resolve every product, check and decrement
   its stock with a conditional update, then insert the bill with its lines
   and write the total. Any failure rolls the whole sale back, including the
   stock of lines processed earlier.
2. After the commit: render and upload the receipt, email it to the customer,
   cache the new bill and evict stale product and bill entries. These steps
   cannot undo the sale, so their failures are mapped into the error taxonomy
   and reported as :class:`DeliveryWarning` values on the result instead of
   being raised.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Sequence, Tuple

from . import log
from .constants import MONEY_QUANTUM, RECEIPT_CONTENT_TYPE, RECEIPT_EMAIL_SUBJECT
from .errors import AppError, NotFoundError, ValidationError
from .providers import EmailSender, ObjectStorage, call_provider
from .receipts import receipt_name, render_receipt
from .records import BillRecord, CustomerRecord, ProductRecord, SaleLineRecord
from .services import CrudService, ReadOnlyService
from .store import Database, SaleLineDraft, create_bill, decrement_stock, translate_errors


@dataclass(frozen=True)
class SaleLineRequest:
    """One requested product line."""

    product_id: int
    quantity: int
    sale_price: Decimal


@dataclass(frozen=True)
class SaleRequest:
    """User intent for selling one or more products to a customer."""

    customer_id: int
    lines: Tuple[SaleLineRequest, ...]
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class DeliveryWarning:
    """Post-commit step that failed without invalidating the sale."""

    step: str
    message: str
    status_code: int
    metadata: Any = None

    @classmethod
    def from_error(cls, step: str, error: AppError) -> "DeliveryWarning":
        return cls(step=step, message=error.message, status_code=error.status_code, metadata=error.metadata)


@dataclass(frozen=True)
class SaleResult:
    """Outcome of a committed sale."""

    bill: BillRecord
    customer: CustomerRecord
    receipt_location: Optional[str] = None
    warnings: Tuple[DeliveryWarning, ...] = field(default_factory=tuple)

    @property
    def delivered(self) -> bool:
        """``True`` when every post-commit step succeeded."""
        return not self.warnings


def require_positive_quantity(quantity: int) -> None:
    """Validate that a line quantity is a strictly positive integer.

    Raises:
        ValidationError: If ``quantity`` is zero, negative or not an integer.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValidationError("Quantity must be a positive integer", {"quantity": quantity})


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a sale price is zero or positive and fits in cents.

    Raises:
        ValidationError: If ``amount`` is negative, not a finite number or
            carries more than two decimal places.
    """
    if not isinstance(amount, Decimal) or not amount.is_finite() or amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValidationError("Sale price must be zero or positive", {"sale_price": str(amount)})
    if amount != amount.quantize(MONEY_QUANTUM):
        log.error("Monetary value has sub-cent precision: %s", amount)
        raise ValidationError("Sale price must have at most two decimal places", {"sale_price": str(amount)})


def validate_sale_request(request: SaleRequest) -> None:
    """Reject malformed requests before any I/O happens."""

    if not request.lines:
        raise ValidationError("A sale requires at least one line")
    for line in request.lines:
        require_positive_quantity(line.quantity)
        require_nonnegative_money(line.sale_price)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    if candidate is None:
        return datetime.now(timezone.utc)
    if candidate.tzinfo is None:
        return candidate.replace(tzinfo=timezone.utc)
    return candidate.astimezone(timezone.utc)


class SaleOrchestrator:
    """Coordinate customers, products, bills and side effects for one sale."""

    def __init__(
        self,
        database: Database,
        *,
        customers: CrudService[CustomerRecord],
        products: CrudService[ProductRecord],
        bills: ReadOnlyService[BillRecord],
        sale_lines: ReadOnlyService[SaleLineRecord],
        storage: ObjectStorage,
        email: Optional[EmailSender] = None,
    ) -> None:
        self._database = database
        self._customers = customers
        self._products = products
        self._bills = bills
        self._sale_lines = sale_lines
        self._storage = storage
        self._email = email

    async def resolve_customer(self, details: Mapping[str, Any]) -> CustomerRecord:
        """Return the customer registered under ``details['email']``, creating it if absent."""

        email = details.get("email")
        if not email:
            raise ValidationError("Customer email is required")
        existing = await self._customers.find_by("email", email)
        if existing is not None:
            return existing
        log.info("Registering walk-in customer '%s'", email)
        return await self._customers.save(details)

    async def process_sale(self, request: SaleRequest) -> SaleResult:
        """Validate, persist and deliver one sale.

        Args:
            request (SaleRequest): Customer reference and requested lines.

        Returns:
            SaleResult: The committed bill, the receipt location and any
                post-commit delivery warnings.

        Raises:
            ValidationError: If the request is malformed or a product lacks
                stock; nothing is persisted.
            NotFoundError: If the customer or a product does not exist; nothing
                is persisted.
            CacheError: If the customer lookup cannot reach the cache.
            DatabaseError: If the store fails before the commit.
        """

        validate_sale_request(request)

        customer = await self._customers.find_by_id(request.customer_id)
        if customer is None:
            log.error("Sale rejected, customer %s not found", request.customer_id)
            raise NotFoundError("Customer", {"customer_id": request.customer_id})

        bill, products = await self._commit_sale(customer, request)
        log.info(
            "Recorded bill %s for customer %s (%d lines, total=%s)",
            bill.id,
            customer.id,
            len(bill.lines),
            bill.total_amount,
        )

        warnings: List[DeliveryWarning] = []
        location = await self._deliver_receipt(customer, bill, warnings)
        await self._refresh_cache(bill, products, warnings)
        for warning in warnings:
            log.warning("Bill %s: %s step failed: %s", bill.id, warning.step, warning.message)
        return SaleResult(bill=bill, customer=customer, receipt_location=location, warnings=tuple(warnings))

    async def _commit_sale(
        self,
        customer: CustomerRecord,
        request: SaleRequest,
    ) -> Tuple[BillRecord, List[ProductRecord]]:
        product_store = self._products.store
        drafts: List[SaleLineDraft] = []
        touched: List[ProductRecord] = []
        async with translate_errors("processing sale"):
            async with self._database.transaction() as session:
                for line in request.lines:
                    product = await product_store.find_by_id(line.product_id, session=session)
                    if product is None:
                        log.error("Sale rejected, product %s not found", line.product_id)
                        raise NotFoundError("Product", {"product_id": line.product_id})
                    if product.available_quantity < line.quantity:
                        raise self._insufficient_stock(product, line.quantity)
                    if not await decrement_stock(session, product.id, line.quantity):
                        # Another sale consumed the stock between the read and the update.
                        raise self._insufficient_stock(product, line.quantity)
                    drafts.append(SaleLineDraft(line.product_id, line.quantity, line.sale_price))
                    touched.append(product)
                    log.debug("Reserved %s unit(s) of product %s", line.quantity, product.id)

                bill = await create_bill(
                    session,
                    customer_id=customer.id,
                    lines=drafts,
                    created_at=_resolve_timestamp(request.timestamp),
                )
        return bill, touched

    @staticmethod
    def _insufficient_stock(product: ProductRecord, requested: int) -> ValidationError:
        log.error(
            "Sale rejected, insufficient stock for product '%s' (available=%s, requested=%s)",
            product.name,
            product.available_quantity,
            requested,
        )
        return ValidationError(
            f"Insufficient stock for product {product.name}",
            {
                "product_id": product.id,
                "available_quantity": product.available_quantity,
                "requested_quantity": requested,
            },
        )

    async def _deliver_receipt(
        self,
        customer: CustomerRecord,
        bill: BillRecord,
        warnings: List[DeliveryWarning],
    ) -> Optional[str]:
        rendered: List[str] = []

        async def upload() -> str:
            html = render_receipt(customer, bill)
            rendered.append(html)
            return await self._storage.put(receipt_name(customer, bill), html.encode("utf-8"), RECEIPT_CONTENT_TYPE)

        location = await _attempt(
            "receipt_upload",
            lambda: call_provider(upload, default_message="Error uploading receipt"),
            warnings,
        )

        # Nothing to email when the receipt could not be rendered.
        if self._email is not None and rendered:
            email = self._email
            html = rendered[0]
            await _attempt(
                "receipt_email",
                lambda: call_provider(
                    lambda: email.send([customer.email], RECEIPT_EMAIL_SUBJECT, html),
                    default_message="Error sending receipt email",
                ),
                warnings,
            )
        return location

    async def _refresh_cache(
        self,
        bill: BillRecord,
        products: Sequence[ProductRecord],
        warnings: List[DeliveryWarning],
    ) -> None:
        async def refresh() -> None:
            await self._products.invalidate(*products)
            await self._sale_lines.invalidate(*bill.lines)
            await self._bills.invalidate(bill)
            await self._bills.cache_record(bill)

        await _attempt("cache_refresh", refresh, warnings)


async def _attempt(
    step: str,
    operation: Callable[[], Awaitable[Any]],
    warnings: List[DeliveryWarning],
) -> Any:
    try:
        return await operation()
    except AppError as error:
        warnings.append(DeliveryWarning.from_error(step, error))
        return None
