"""Shared pytest fixtures for the sales backend tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Optional

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from sales_erp import cli  # noqa: E402
from sales_erp.cache import Cache  # noqa: E402
from sales_erp.records import CustomerRecord, ProductRecord  # noqa: E402
from sales_erp.runtime import RuntimeContext, build_runtime  # noqa: E402
from sales_erp.store import Database  # noqa: E402

from doubles import InMemoryRedis, RecordingEmailSender, RecordingStorage  # noqa: E402

_CONFIG_TEMPLATE = (
    "[Database]\n"
    "Url = {database_url}\n\n"
    "[Cache]\n"
    "Url = {cache_url}\n"
    "TTLSeconds = {ttl}\n\n"
    "[Storage]\n"
    "ReceiptDirectory = {receipt_directory}\n"
)

_EMAIL_TEMPLATE = "\n[Email]\nHost = {host}\nPort = {port}\nSender = {sender}\n"


# ---------------------------------------------------------------------------
# Configuration fixtures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    database_file: Path
    receipt_directory: Path


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., ConfigBundle]:
    """Provide a callable that writes ``config.ini`` files on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        cache_url: str = "redis://localhost:6379/0",
        ttl: int = 3600,
        email: Optional[Dict[str, Any]] = None,
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True)
        database_file = bundle_dir / "sales.db"
        receipt_directory = bundle_dir / "receipts"
        if make_relative:
            database_url = "sqlite+aiosqlite:///sales.db"
            receipt_entry = "receipts"
        else:
            database_url = f"sqlite+aiosqlite:///{database_file}"
            receipt_entry = str(receipt_directory)
        text = _CONFIG_TEMPLATE.format(
            database_url=database_url,
            cache_url=cache_url,
            ttl=ttl,
            receipt_directory=receipt_entry,
        )
        if email is not None:
            text += _EMAIL_TEMPLATE.format(**email)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(text)
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            database_file=database_file,
            receipt_directory=receipt_directory,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


# ---------------------------------------------------------------------------
# Store and cache fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def database(tmp_path: Path) -> AsyncIterator[Database]:
    """File-backed SQLite database with the schema created."""

    db = Database.from_url(f"sqlite+aiosqlite:///{tmp_path / 'sales.db'}")
    await db.create_schema()
    try:
        yield db
    finally:
        await db.dispose()


@pytest.fixture
def redis_client() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture
def cache(redis_client: InMemoryRedis) -> Cache:
    return Cache(redis_client)


@pytest.fixture
def storage() -> RecordingStorage:
    return RecordingStorage()


@pytest.fixture
def mailer() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def runtime_context(
    database: Database,
    cache: Cache,
    storage: RecordingStorage,
    mailer: RecordingEmailSender,
) -> RuntimeContext:
    """Runtime wired with the in-memory cache and recording providers."""

    return build_runtime(database, cache, storage, email=mailer)


@dataclass(frozen=True)
class SeedBundle:
    customer: CustomerRecord
    product: ProductRecord


@pytest.fixture
def seed(runtime_context: RuntimeContext) -> Callable[..., Any]:
    """Return a coroutine factory that inserts a customer and a product."""

    async def _seed(
        *,
        stock: int = 5,
        price: str = "10.00",
        email: str = "a@b.com",
        product_name: str = "Widget",
    ) -> SeedBundle:
        customer = await runtime_context.customers.store.create(
            {"email": email, "first_name": "Ada", "last_name": "Lovelace"}
        )
        product = await runtime_context.products.store.create(
            {"name": product_name, "price": Decimal(price), "available_quantity": stock}
        )
        return SeedBundle(customer=customer, product=product)

    return _seed


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh top-level CLI parser."""

    return cli.build_parser()


@pytest.fixture
def command_spec_iterable() -> List[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original
