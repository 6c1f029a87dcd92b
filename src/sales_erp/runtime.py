"""Explicit construction of the service graph.

Nothing in the package registers itself globally. The API server, the CLI and
the tests all obtain their collaborators from a :class:`RuntimeContext`
built by :func:`build_runtime` (from already constructed parts) or by
:func:`load_runtime_context` (from ``config.ini``).
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import log
from .cache import Cache, connect_cache
from .constants import CACHE_TTL_SECONDS
from .providers import (
    EmailSender,
    EncryptingObjectStorage,
    FilesystemObjectStorage,
    IdentityProvider,
    KeyManager,
    ObjectStorage,
    SmtpEmailSender,
)
from .records import BillRecord, CustomerRecord, ProductRecord, SaleLineRecord
from .sales import SaleOrchestrator
from .services import CrudService, ReadOnlyService
from .settings import ConfigSettings, load_settings
from .store import BILLS, CUSTOMERS, PRODUCTS, SALE_LINES, Database, EntityStore


@dataclass(frozen=True)
class RuntimeContext:
    """Container for every collaborator used by the API and the CLI."""

    database: Database
    cache: Cache
    products: CrudService[ProductRecord]
    customers: CrudService[CustomerRecord]
    bills: ReadOnlyService[BillRecord]
    sale_lines: ReadOnlyService[SaleLineRecord]
    sales: SaleOrchestrator
    identity: Optional[IdentityProvider] = None
    settings: Optional[ConfigSettings] = None

    async def close(self) -> None:
        """Release the cache connection and the database engine."""
        await self.cache.close()
        await self.database.dispose()
        log.info("Runtime context closed")


def build_runtime(
    database: Database,
    cache: Cache,
    storage: ObjectStorage,
    *,
    email: Optional[EmailSender] = None,
    identity: Optional[IdentityProvider] = None,
    key_manager: Optional[KeyManager] = None,
    ttl: int = CACHE_TTL_SECONDS,
    settings: Optional[ConfigSettings] = None,
) -> RuntimeContext:
    """Wire stores, cache-aside services and the sale orchestrator together.

    Args:
        database (Database): Open database handle.
        cache (Cache): Connected cache facade.
        storage (ObjectStorage): Destination for receipts. Wrapped in
            :class:`EncryptingObjectStorage` when ``key_manager`` is given.
        email (EmailSender | None): Receipt mailer; ``None`` disables email.
        identity (IdentityProvider | None): Enables token checks on the API.
        key_manager (KeyManager | None): Encrypts receipts before upload.
        ttl (int): Expiry applied to every cache entry.
        settings (ConfigSettings | None): Settings the context was built from.

    Returns:
        RuntimeContext: Fully wired context.
    """

    if key_manager is not None:
        storage = EncryptingObjectStorage(storage, key_manager)

    products = CrudService(EntityStore(database, PRODUCTS), cache, ttl=ttl, lookup_fields=("name",))
    customers = CrudService(EntityStore(database, CUSTOMERS), cache, ttl=ttl, lookup_fields=("email",))
    bills = ReadOnlyService(EntityStore(database, BILLS), cache, ttl=ttl, lookup_fields=("customer_id",))
    sale_lines = ReadOnlyService(EntityStore(database, SALE_LINES), cache, ttl=ttl)

    sales = SaleOrchestrator(
        database,
        customers=customers,
        products=products,
        bills=bills,
        sale_lines=sale_lines,
        storage=storage,
        email=email,
    )
    return RuntimeContext(
        database=database,
        cache=cache,
        products=products,
        customers=customers,
        bills=bills,
        sale_lines=sale_lines,
        sales=sales,
        identity=identity,
        settings=settings,
    )


async def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    identity: Optional[IdentityProvider] = None,
    key_manager: Optional[KeyManager] = None,
) -> RuntimeContext:
    """Build a :class:`RuntimeContext` from ``config.ini``.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
        CacheError: If the cache server is unreachable.
    """

    settings = load_settings(config_path)
    database = Database.from_url(settings.database_url)
    try:
        cache = await connect_cache(settings.cache_url)
    except Exception:
        await database.dispose()
        raise

    email: Optional[EmailSender] = None
    if settings.email is not None:
        email = SmtpEmailSender(settings.email.host, settings.email.port, settings.email.sender)

    context = build_runtime(
        database,
        cache,
        FilesystemObjectStorage(settings.receipt_directory),
        email=email,
        identity=identity,
        key_manager=key_manager,
        ttl=settings.cache_ttl,
        settings=settings,
    )
    log.info("Loaded runtime context (receipts in '%s')", settings.receipt_directory)
    return context
