"""Cache-aside services in front of the entity store.

Two capability sets exist. :class:`ReadOnlyService` serves reads through the
cache and is used for bills and sale lines, which only the sale orchestrator
writes. :class:`CrudService` adds ``save``, ``update`` and ``delete`` and is
used for products and customers. Both are instantiated per entity kind by
composition: an :class:`~sales_erp.store.EntityStore` plus a
:class:`~sales_erp.cache.Cache`.

Consistency rules:

* Reads check the cache first and write through on a store hit. Absent
  entities and empty listings are never cached.
* Writes go to the store first; the cache is refreshed or evicted only after
  the store confirmed the change.
* Listing keys are evicted on writes. Pagination keys cannot be enumerated
  and expire through their TTL.
* Any cache failure surfaces as ``CacheError``; the services never fall back
  to the store behind the caller's back.
"""

from __future__ import annotations

import json
from decimal import InvalidOperation
from typing import Any, Generic, List, Mapping, Optional, Sequence, TypeVar

from . import log
from .cache import Cache, all_key, entity_key, lookup_key, pagination_key
from .constants import CACHE_TTL_SECONDS, EntityKind
from .errors import CacheError, ValidationError
from .records import Page, codec_for, deserialize_page, serialize_page
from .store import EntityStore


R = TypeVar("R")

_DECODE_ERRORS = (ValueError, KeyError, TypeError, InvalidOperation)


class ReadOnlyService(Generic[R]):
    """Cached reads for one entity kind."""

    def __init__(
        self,
        store: EntityStore[R],
        cache: Cache,
        *,
        ttl: int = CACHE_TTL_SECONDS,
        lookup_fields: Sequence[str] = (),
    ) -> None:
        self.store = store
        self.cache = cache
        self.ttl = ttl
        self.lookup_fields = tuple(lookup_fields)
        self._codec = codec_for(store.kind)

    @property
    def kind(self) -> EntityKind:
        return self.store.kind

    # -- payload helpers ----------------------------------------------------

    def _encode(self, payload: Any) -> str:
        try:
            return json.dumps(payload, separators=(",", ":"))
        except (TypeError, ValueError) as exc:
            raise CacheError(f"Unable to serialize {self.kind.value} for the cache", str(exc)) from exc

    def _decode(self, key: str, raw: str, convert) -> Any:
        try:
            return convert(json.loads(raw))
        except _DECODE_ERRORS as exc:
            log.error("Corrupt cache payload under key '%s': %s", key, exc)
            raise CacheError(f"Unable to deserialize cache key {key}", str(exc)) from exc

    async def _remember(self, key: str, payload: Any) -> None:
        await self.cache.set(key, self._encode(payload), self.ttl)

    # -- reads --------------------------------------------------------------

    async def find_by_id(self, entity_id: int) -> Optional[R]:
        """Return the record with ``entity_id`` or ``None`` when it does not exist."""

        key = entity_key(self.kind, entity_id)
        cached = await self.cache.get(key)
        if cached is not None:
            log.debug("Cache hit for '%s'", key)
            return self._decode(key, cached, self._codec.deserialize)

        log.debug("Cache miss for '%s'", key)
        record = await self.store.find_by_id(entity_id)
        if record is None:
            log.warning("%s %s not found", self.kind.label, entity_id)
            return None
        await self._remember(key, self._codec.serialize(record))
        return record

    async def find_all(self) -> List[R]:
        key = all_key(self.kind)
        cached = await self.cache.get(key)
        if cached is not None:
            log.debug("Cache hit for '%s'", key)
            return self._decode(key, cached, lambda items: [self._codec.deserialize(item) for item in items])

        records = await self.store.find_all()
        if records:
            await self._remember(key, [self._codec.serialize(record) for record in records])
        return records

    async def find_paginated(self, skip: int, take: int) -> Page[R]:
        """Return one page of records.

        Raises:
            ValidationError: If ``skip`` is negative or ``take`` is not positive.
        """

        if skip < 0 or take <= 0:
            raise ValidationError("Pagination requires skip >= 0 and take > 0", {"skip": skip, "take": take})

        key = pagination_key(self.kind, skip, take)
        cached = await self.cache.get(key)
        if cached is not None:
            log.debug("Cache hit for '%s'", key)
            return self._decode(key, cached, lambda payload: deserialize_page(payload, self._codec))

        page = await self.store.find_paginated(skip, take)
        if page.data:
            await self._remember(key, serialize_page(page, self._codec))
        return page

    async def find_by(self, field: str, value: Any) -> Optional[R]:
        """Return the record whose ``field`` equals ``value``, e.g. a customer by email.

        Only ``lookup_fields`` are cached; other fields always read the store.
        """

        cacheable = field in self.lookup_fields
        key = lookup_key(self.kind, field, value)
        if cacheable:
            cached = await self.cache.get(key)
            if cached is not None:
                return self._decode(key, cached, self._codec.deserialize)

        record = await self.store.find_one_by(field, value)
        if record is None:
            log.warning("%s with %s '%s' not found", self.kind.label, field, value)
            return None
        if cacheable:
            await self._remember(key, self._codec.serialize(record))
        return record

    async def find_all_by(self, field: str, value: Any) -> List[R]:
        """Return every record whose ``field`` equals ``value``, e.g. bills by customer."""

        cacheable = field in self.lookup_fields
        key = lookup_key(self.kind, field, value)
        if cacheable:
            cached = await self.cache.get(key)
            if cached is not None:
                return self._decode(key, cached, lambda items: [self._codec.deserialize(item) for item in items])

        records = await self.store.find_many_by(field, value)
        if records and cacheable:
            await self._remember(key, [self._codec.serialize(record) for record in records])
        return records

    # -- cache maintenance ----------------------------------------------------

    async def cache_record(self, record: R) -> None:
        """Write ``record`` under its id key."""

        await self._remember(entity_key(self.kind, record.id), self._codec.serialize(record))

    def _lookup_keys(self, record: Optional[R]) -> List[str]:
        if record is None:
            return []
        return [lookup_key(self.kind, field, getattr(record, field)) for field in self.lookup_fields]

    async def invalidate(self, *records: Optional[R], entity_id: Optional[int] = None) -> None:
        """Evict the listing key and the id and lookup keys of ``records``."""

        keys = {all_key(self.kind)}
        if entity_id is not None:
            keys.add(entity_key(self.kind, entity_id))
        for record in records:
            if record is None:
                continue
            keys.add(entity_key(self.kind, record.id))
            keys.update(self._lookup_keys(record))
        await self.cache.delete(*sorted(keys))


class CrudService(ReadOnlyService[R]):
    """Cached reads plus store-first writes for one entity kind."""

    async def _previous(self, entity_id: int) -> Optional[R]:
        if not self.lookup_fields:
            return None
        return await self.store.find_by_id(entity_id)

    async def save(self, values: Mapping[str, Any]) -> R:
        """Persist a new entity and write it through to the cache."""

        record = await self.store.create(values)
        await self.invalidate(record)
        await self.cache_record(record)
        log.info("Saved %s %s", self.kind.value, record.id)
        return record

    async def update(self, entity_id: int, values: Mapping[str, Any]) -> R:
        """Apply ``values`` and refresh the cached copy.

        Raises:
            NotFoundError: If the entity does not exist.
        """

        previous = await self._previous(entity_id)
        record = await self.store.update(entity_id, values)
        await self.invalidate(previous, record)
        await self.cache_record(record)
        return record

    async def delete(self, entity_id: int) -> bool:
        """Delete the entity and evict it; a failed delete evicts nothing."""

        previous = await self._previous(entity_id)
        deleted = await self.store.delete(entity_id)
        await self.invalidate(previous, entity_id=entity_id)
        return deleted
