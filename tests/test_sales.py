"""Behavioural tests for the sale orchestrator."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from sales_erp import sales
from sales_erp.constants import RECEIPT_CONTENT_TYPE, RECEIPT_EMAIL_SUBJECT
from sales_erp.errors import NotFoundError, ValidationError

from doubles import ProviderFailure


def _request(customer_id, *lines, timestamp=None):
    return sales.SaleRequest(
        customer_id=customer_id,
        lines=tuple(sales.SaleLineRequest(product_id, quantity, Decimal(price)) for product_id, quantity, price in lines),
        timestamp=timestamp,
    )


async def _stock(runtime_context, product_id):
    return (await runtime_context.products.store.find_by_id(product_id)).available_quantity


async def test_sale_records_bill_and_decrements_stock(runtime_context, seed, storage, mailer):
    seeded = await seed(stock=5, price="10.00")
    request = _request(
        seeded.customer.id,
        (seeded.product.id, 3, "12.00"),
        timestamp=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
    )

    result = await runtime_context.sales.process_sale(request)

    assert result.bill.total_amount == Decimal("36.00")
    assert result.bill.customer_id == seeded.customer.id
    assert [(line.product_id, line.quantity, line.sale_price) for line in result.bill.lines] == [
        (seeded.product.id, 3, Decimal("12.00"))
    ]
    assert result.delivered is True
    assert result.customer == seeded.customer
    assert await _stock(runtime_context, seeded.product.id) == 2

    name = "Ada-Lovelace-bill-20240501T120000000000Z.html"
    assert result.receipt_location == f"memory://receipts/{name}"
    data, content_type = storage.objects[name]
    assert content_type == RECEIPT_CONTENT_TYPE
    assert b"36.00" in data

    assert len(mailer.sent) == 1
    recipients, subject, html = mailer.sent[0]
    assert recipients == ("a@b.com",)
    assert subject == RECEIPT_EMAIL_SUBJECT
    assert "Widget" in html


async def test_bill_is_cached_after_sale(runtime_context, seed, redis_client):
    seeded = await seed()
    result = await runtime_context.sales.process_sale(_request(seeded.customer.id, (seeded.product.id, 1, "10.00")))

    cached = json.loads(redis_client.values[f"bill:{result.bill.id}"])
    assert cached["total_amount"] == "10.00"
    assert await runtime_context.bills.find_by_id(result.bill.id) == result.bill


async def test_sale_evicts_stale_product_and_bill_listing_entries(runtime_context, seed, redis_client):
    seeded = await seed(stock=5)
    await runtime_context.products.find_by_id(seeded.product.id)
    await runtime_context.products.find_by("name", seeded.product.name)
    first = await runtime_context.sales.process_sale(_request(seeded.customer.id, (seeded.product.id, 1, "10.00")))
    await runtime_context.bills.find_all_by("customer_id", seeded.customer.id)
    assert f"bill:customer_id:{seeded.customer.id}" in redis_client.values

    await runtime_context.sales.process_sale(_request(seeded.customer.id, (seeded.product.id, 1, "10.00")))

    assert f"product:{seeded.product.id}" not in redis_client.values
    assert f"product:name:{seeded.product.name}" not in redis_client.values
    assert f"bill:customer_id:{seeded.customer.id}" not in redis_client.values
    assert (await runtime_context.products.find_by_id(seeded.product.id)).available_quantity == 3
    bills = await runtime_context.bills.find_all_by("customer_id", seeded.customer.id)
    assert [bill.id for bill in bills] == [first.bill.id, first.bill.id + 1]


async def test_insufficient_stock_rejects_sale_without_writes(runtime_context, seed, storage, mailer):
    seeded = await seed(stock=2)

    with pytest.raises(ValidationError) as excinfo:
        await runtime_context.sales.process_sale(_request(seeded.customer.id, (seeded.product.id, 3, "10.00")))

    assert excinfo.value.metadata == {
        "product_id": seeded.product.id,
        "available_quantity": 2,
        "requested_quantity": 3,
    }
    assert "Widget" in excinfo.value.message
    assert await _stock(runtime_context, seeded.product.id) == 2
    assert await runtime_context.bills.store.find_all() == []
    assert storage.objects == {}
    assert mailer.sent == []


async def test_missing_customer_is_not_found_and_nothing_is_written(runtime_context, seed, storage):
    seeded = await seed()

    with pytest.raises(NotFoundError) as excinfo:
        await runtime_context.sales.process_sale(_request(seeded.customer.id + 50, (seeded.product.id, 1, "10.00")))

    assert excinfo.value.message == "Customer not found"
    assert await _stock(runtime_context, seeded.product.id) == 5
    assert await runtime_context.bills.store.find_all() == []
    assert storage.objects == {}


async def test_missing_product_is_not_found(runtime_context, seed):
    seeded = await seed()

    with pytest.raises(NotFoundError) as excinfo:
        await runtime_context.sales.process_sale(_request(seeded.customer.id, (9999, 1, "10.00")))

    assert excinfo.value.metadata == {"product_id": 9999}


async def test_failure_on_later_line_rolls_back_earlier_lines(runtime_context, seed):
    seeded = await seed(stock=5)
    scarce = await runtime_context.products.store.create(
        {"name": "Gadget", "price": Decimal("4.00"), "available_quantity": 1}
    )

    with pytest.raises(ValidationError):
        await runtime_context.sales.process_sale(
            _request(seeded.customer.id, (seeded.product.id, 2, "10.00"), (scarce.id, 2, "4.00"))
        )

    assert await _stock(runtime_context, seeded.product.id) == 5
    assert await _stock(runtime_context, scarce.id) == 1
    assert await runtime_context.bills.store.find_all() == []


async def test_multi_line_sale_totals_every_line(runtime_context, seed):
    seeded = await seed(stock=5)
    gadget = await runtime_context.products.store.create(
        {"name": "Gadget", "price": Decimal("4.00"), "available_quantity": 4}
    )

    result = await runtime_context.sales.process_sale(
        _request(seeded.customer.id, (seeded.product.id, 1, "9.99"), (gadget.id, 4, "0.00"))
    )

    assert result.bill.total_amount == Decimal("9.99")
    assert await _stock(runtime_context, gadget.id) == 0


@pytest.mark.parametrize(
    ("quantity", "price"),
    [(0, "1.00"), (-2, "1.00"), (1, "-0.01"), (3, "12.005")],
)
async def test_malformed_lines_are_rejected_before_io(runtime_context, seed, quantity, price):
    seeded = await seed()

    with pytest.raises(ValidationError):
        await runtime_context.sales.process_sale(_request(seeded.customer.id, (seeded.product.id, quantity, price)))

    assert await _stock(runtime_context, seeded.product.id) == 5


async def test_sale_without_lines_is_rejected(runtime_context):
    with pytest.raises(ValidationError):
        await runtime_context.sales.process_sale(sales.SaleRequest(customer_id=1, lines=()))


async def test_upload_failure_is_reported_as_warning(runtime_context, seed, storage, mailer):
    seeded = await seed()
    storage.fail_with = ProviderFailure("ServiceUnavailable", "storage down")

    result = await runtime_context.sales.process_sale(_request(seeded.customer.id, (seeded.product.id, 1, "10.00")))

    assert result.delivered is False
    assert result.receipt_location is None
    assert [warning.step for warning in result.warnings] == ["receipt_upload"]
    assert result.warnings[0].message == "Error uploading receipt"
    assert await runtime_context.bills.store.find_by_id(result.bill.id) == result.bill
    assert len(mailer.sent) == 1


async def test_email_failure_is_reported_as_warning(runtime_context, seed, mailer):
    seeded = await seed()
    mailer.fail_with = ConnectionRefusedError("smtp down")

    result = await runtime_context.sales.process_sale(_request(seeded.customer.id, (seeded.product.id, 1, "10.00")))

    assert [warning.step for warning in result.warnings] == ["receipt_email"]
    assert result.warnings[0].status_code == 500
    assert result.receipt_location is not None


async def test_cache_outage_after_commit_keeps_the_sale(runtime_context, seed, redis_client):
    seeded = await seed()
    await runtime_context.customers.find_by_id(seeded.customer.id)
    original_delete = redis_client.delete

    async def failing_delete(*keys):
        redis_client.go_down()
        return await original_delete(*keys)

    redis_client.delete = failing_delete

    result = await runtime_context.sales.process_sale(_request(seeded.customer.id, (seeded.product.id, 1, "10.00")))

    assert [warning.step for warning in result.warnings] == ["cache_refresh"]
    assert await _stock(runtime_context, seeded.product.id) == 4


async def test_resolve_customer_reuses_or_registers(runtime_context, seed):
    seeded = await seed()
    orchestrator = runtime_context.sales

    existing = await orchestrator.resolve_customer({"email": "a@b.com", "first_name": "X", "last_name": "Y"})
    assert existing == seeded.customer

    created = await orchestrator.resolve_customer({"email": "walk@in.com", "first_name": "Walk", "last_name": "In"})
    assert created.id != seeded.customer.id
    assert await runtime_context.customers.store.find_one_by("email", "walk@in.com") == created

    with pytest.raises(ValidationError):
        await orchestrator.resolve_customer({"first_name": "No", "last_name": "Email"})


def test_require_positive_quantity_rejects_booleans():
    with pytest.raises(ValidationError):
        sales.require_positive_quantity(True)
    sales.require_positive_quantity(1)


def test_require_nonnegative_money_rejects_non_finite():
    with pytest.raises(ValidationError):
        sales.require_nonnegative_money(Decimal("NaN"))
    sales.require_nonnegative_money(Decimal("0"))


def test_require_nonnegative_money_rejects_sub_cent_prices():
    with pytest.raises(ValidationError) as excinfo:
        sales.require_nonnegative_money(Decimal("12.005"))

    assert excinfo.value.metadata == {"sale_price": "12.005"}
    sales.require_nonnegative_money(Decimal("12.50"))
    sales.require_nonnegative_money(Decimal("12.500"))


async def test_sub_cent_price_is_rejected_before_any_write(runtime_context, seed, storage):
    seeded = await seed(stock=5)

    with pytest.raises(ValidationError):
        await runtime_context.sales.process_sale(_request(seeded.customer.id, (seeded.product.id, 3, "12.005")))

    assert await _stock(runtime_context, seeded.product.id) == 5
    assert await runtime_context.bills.store.find_all() == []
    assert storage.objects == {}


async def test_bill_total_matches_sum_of_line_totals(runtime_context, seed):
    seeded = await seed(stock=10)

    result = await runtime_context.sales.process_sale(
        _request(seeded.customer.id, (seeded.product.id, 3, "12.01"), (seeded.product.id, 7, "0.33"))
    )

    assert result.bill.total_amount == sum((line.line_total for line in result.bill.lines), Decimal("0"))
    assert result.bill.total_amount == Decimal("38.34")


async def test_render_failure_is_reported_as_upload_warning(runtime_context, seed, storage, mailer, monkeypatch):
    seeded = await seed()

    def broken_template(customer, bill):
        raise RuntimeError("template missing")

    monkeypatch.setattr(sales, "render_receipt", broken_template)

    result = await runtime_context.sales.process_sale(_request(seeded.customer.id, (seeded.product.id, 1, "10.00")))

    assert [warning.step for warning in result.warnings] == ["receipt_upload"]
    assert result.receipt_location is None
    assert await runtime_context.bills.store.find_by_id(result.bill.id) == result.bill
    assert storage.objects == {}
    assert mailer.sent == []


async def test_overlapping_sale_takes_the_last_unit(runtime_context, seed, monkeypatch):
    """A sale that read the stock before a competing commit loses the race."""

    seeded = await seed(stock=1)
    product_store = runtime_context.products.store
    original_find = product_store.find_by_id
    competitor = []
    started = []

    async def find_then_compete(entity_id, **kwargs):
        record = await original_find(entity_id, **kwargs)
        if not started:
            started.append(entity_id)
            competitor.append(
                await runtime_context.sales.process_sale(_request(seeded.customer.id, (seeded.product.id, 1, "10.00")))
            )
        return record

    monkeypatch.setattr(product_store, "find_by_id", find_then_compete)

    with pytest.raises(ValidationError) as excinfo:
        await runtime_context.sales.process_sale(_request(seeded.customer.id, (seeded.product.id, 1, "10.00")))

    assert excinfo.value.metadata["requested_quantity"] == 1
    assert len(competitor) == 1
    assert await _stock(runtime_context, seeded.product.id) == 0
    assert [bill.id for bill in await runtime_context.bills.store.find_all()] == [competitor[0].bill.id]
