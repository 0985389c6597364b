# backend/unit_repositories.py

"""
Unit Catalog and Conversion Store.

Two implementations of each:
- Mongo*: motor collections (cfg_units, cfg_unit_conversions by default)
- InMemory*: process-local, used by tests, scripts and single-process setups

These classes ONLY fetch and write data. No conversion logic lives here;
activity/standard checks that decide conversion behaviour happen in the
engine and expander.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Set, Tuple
import copy
import logging

from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from unit_conversion_models import EntityRef, Unit, UnitConversion

logger = logging.getLogger(__name__)

UNIT_SORT = [("sort_order", ASCENDING), ("code", ASCENDING)]


def _sort_units(units: Iterable[Unit]) -> List[Unit]:
    return sorted(units, key=lambda u: (u.sort_order, u.code))


# ==================== UNIT CATALOG ====================

class UnitCatalog:
    """Read access to unit master data (plus an upsert used by seeding/tests)"""

    async def find_by_code(self, code: str) -> Optional[Unit]:
        raise NotImplementedError

    async def find_by_codes(self, codes: Iterable[str]) -> List[Unit]:
        raise NotImplementedError

    async def find_standard_by_types(self, types: Iterable[str]) -> List[Unit]:
        """Active standard units whose type is in types"""
        raise NotImplementedError

    async def list_units(self, unit_type: Optional[str] = None, active_only: bool = True) -> List[Unit]:
        raise NotImplementedError

    async def list_codes(self) -> List[str]:
        raise NotImplementedError

    async def save_unit(self, unit: Unit) -> Unit:
        raise NotImplementedError


class MongoUnitCatalog(UnitCatalog):
    def __init__(self, collection):
        self.collection = collection

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("code", ASCENDING)], unique=True, name="unit_code_unique")
        await self.collection.create_index([("type", ASCENDING)], name="unit_type_idx")

    async def find_by_code(self, code: str) -> Optional[Unit]:
        doc = await self.collection.find_one({"code": code}, {"_id": 0})
        return Unit(**doc) if doc else None

    async def find_by_codes(self, codes: Iterable[str]) -> List[Unit]:
        docs = await self.collection.find({"code": {"$in": list(codes)}}, {"_id": 0}).to_list(None)
        return [Unit(**doc) for doc in docs]

    async def find_standard_by_types(self, types: Iterable[str]) -> List[Unit]:
        query = {"type": {"$in": list(types)}, "is_standard": True, "is_active": True}
        docs = await self.collection.find(query, {"_id": 0}).sort(UNIT_SORT).to_list(None)
        return [Unit(**doc) for doc in docs]

    async def list_units(self, unit_type: Optional[str] = None, active_only: bool = True) -> List[Unit]:
        query: Dict[str, Any] = {}
        if unit_type:
            query["type"] = unit_type
        if active_only:
            query["is_active"] = True
        docs = await self.collection.find(query, {"_id": 0}).sort(UNIT_SORT).to_list(None)
        return [Unit(**doc) for doc in docs]

    async def list_codes(self) -> List[str]:
        docs = await self.collection.find({}, {"_id": 0, "code": 1}).to_list(None)
        return [doc["code"] for doc in docs]

    async def save_unit(self, unit: Unit) -> Unit:
        await self.collection.update_one({"code": unit.code}, {"$set": unit.model_dump()}, upsert=True)
        return unit


class InMemoryUnitCatalog(UnitCatalog):
    def __init__(self, units: Optional[Iterable[Unit]] = None):
        self.units: Dict[str, Unit] = {}
        self.lookups = 0  # number of catalog reads, checked by tests
        for unit in units or []:
            self.add(unit)

    def add(self, *units: Unit) -> None:
        for unit in units:
            self.units[unit.code] = unit

    async def find_by_code(self, code: str) -> Optional[Unit]:
        self.lookups += 1
        return self.units.get(code)

    async def find_by_codes(self, codes: Iterable[str]) -> List[Unit]:
        self.lookups += 1
        return [self.units[code] for code in dict.fromkeys(codes) if code in self.units]

    async def find_standard_by_types(self, types: Iterable[str]) -> List[Unit]:
        self.lookups += 1
        wanted = set(types)
        return _sort_units(
            u for u in self.units.values()
            if u.type in wanted and u.is_standard and u.is_active
        )

    async def list_units(self, unit_type: Optional[str] = None, active_only: bool = True) -> List[Unit]:
        self.lookups += 1
        return _sort_units(
            u for u in self.units.values()
            if (not unit_type or u.type == unit_type) and (u.is_active or not active_only)
        )

    async def list_codes(self) -> List[str]:
        return list(self.units)

    async def save_unit(self, unit: Unit) -> Unit:
        self.add(unit)
        return unit


# ==================== CONVERSION STORE ====================

class ConversionStore:
    """
    Per-entity conversion edges, unique per (entity, from, to).

    Write methods take an optional session returned by transaction().
    """

    def transaction(self):
        """Async context manager yielding the session to pass to writes"""
        raise NotImplementedError

    async def delete_all_for_entity(self, entity: EntityRef, session=None) -> int:
        raise NotImplementedError

    async def insert(self, entity: EntityRef, from_code: str, to_code: str, quantity: float,
                     is_derived: bool = False, is_active: bool = True, session=None) -> UnitConversion:
        record = UnitConversion(
            unitable_type=entity.type,
            unitable_id=entity.id,
            from_unit_code=from_code,
            to_unit_code=to_code,
            quantity=quantity,
            is_derived=is_derived,
            is_active=is_active,
        )
        await self.insert_many([record], session=session)
        return record

    async def insert_many(self, records: List[UnitConversion], session=None) -> int:
        raise NotImplementedError

    async def find_active_edge(self, entity: EntityRef, from_code: str,
                               to_code: Optional[str] = None) -> Optional[UnitConversion]:
        raise NotImplementedError

    async def list_active_edges(self, entity: EntityRef) -> List[UnitConversion]:
        return await self.list_edges(entity, active_only=True)

    async def list_edges(self, entity: EntityRef, is_derived: Optional[bool] = None,
                         active_only: bool = True) -> List[UnitConversion]:
        raise NotImplementedError

    async def upsert_edge(self, entity: EntityRef, from_code: str, to_code: str, quantity: float,
                          is_derived: bool = False, session=None) -> UnitConversion:
        raise NotImplementedError

    async def delete_edges(self, entity: EntityRef, from_code: str, to_code: Optional[str] = None,
                           session=None) -> int:
        raise NotImplementedError

    async def list_entities(self) -> List[EntityRef]:
        """Entities owning at least one active primary (non-derived) edge"""
        raise NotImplementedError


def _edge_query(entity: EntityRef, from_code: Optional[str] = None, to_code: Optional[str] = None,
                is_derived: Optional[bool] = None, active_only: bool = False) -> Dict[str, Any]:
    query: Dict[str, Any] = entity.as_query()
    if from_code is not None:
        query["from_unit_code"] = from_code
    if to_code is not None:
        query["to_unit_code"] = to_code
    if is_derived is not None:
        query["is_derived"] = is_derived
    if active_only:
        query["is_active"] = True
    return query


class MongoConversionStore(ConversionStore):
    """
    motor-backed store.

    Transactions need a replica set. Without a client the store runs writes
    unsessioned (standalone mongod), which gives up the atomicity guarantee.
    """

    def __init__(self, collection, client=None):
        self.collection = collection
        self.client = client

    async def ensure_indexes(self) -> None:
        await self.collection.create_index(
            [("unitable_type", ASCENDING), ("unitable_id", ASCENDING),
             ("from_unit_code", ASCENDING), ("to_unit_code", ASCENDING)],
            unique=True,
            name="unit_conv_unique",
        )
        await self.collection.create_index(
            [("unitable_type", ASCENDING), ("unitable_id", ASCENDING)],
            name="unitable_idx",
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        if self.client is None:
            logger.warning("MongoConversionStore has no client; writes run without a transaction")
            yield None
            return
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                yield session

    async def delete_all_for_entity(self, entity: EntityRef, session=None) -> int:
        result = await self.collection.delete_many(entity.as_query(), session=session)
        return result.deleted_count

    async def insert_many(self, records: List[UnitConversion], session=None) -> int:
        if not records:
            return 0
        await self.collection.insert_many([r.model_dump() for r in records], session=session)
        return len(records)

    async def find_active_edge(self, entity: EntityRef, from_code: str,
                               to_code: Optional[str] = None) -> Optional[UnitConversion]:
        doc = await self.collection.find_one(
            _edge_query(entity, from_code, to_code, active_only=True), {"_id": 0}
        )
        return UnitConversion(**doc) if doc else None

    async def list_edges(self, entity: EntityRef, is_derived: Optional[bool] = None,
                         active_only: bool = True) -> List[UnitConversion]:
        query = _edge_query(entity, is_derived=is_derived, active_only=active_only)
        docs = await self.collection.find(query, {"_id": 0}).to_list(None)
        return [UnitConversion(**doc) for doc in docs]

    async def upsert_edge(self, entity: EntityRef, from_code: str, to_code: str, quantity: float,
                          is_derived: bool = False, session=None) -> UnitConversion:
        record = UnitConversion(
            unitable_type=entity.type,
            unitable_id=entity.id,
            from_unit_code=from_code,
            to_unit_code=to_code,
            quantity=quantity,
            is_derived=is_derived,
        )
        doc = await self.collection.find_one_and_update(
            _edge_query(entity, from_code, to_code),
            {
                "$set": {
                    "quantity": quantity,
                    "is_derived": is_derived,
                    "is_active": True,
                    "updated_at": record.updated_at,
                },
                "$setOnInsert": {"id": record.id, "created_at": record.created_at},
            },
            projection={"_id": 0},
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        return UnitConversion(**doc)

    async def delete_edges(self, entity: EntityRef, from_code: str, to_code: Optional[str] = None,
                           session=None) -> int:
        result = await self.collection.delete_many(_edge_query(entity, from_code, to_code), session=session)
        return result.deleted_count

    async def list_entities(self) -> List[EntityRef]:
        docs = await self.collection.find(
            {"is_derived": False, "is_active": True}, {"_id": 0, "unitable_type": 1, "unitable_id": 1}
        ).to_list(None)
        refs = {EntityRef(type=d["unitable_type"], id=d["unitable_id"]) for d in docs}
        return sorted(refs, key=lambda r: (r.type, r.id))


class InMemoryConversionStore(ConversionStore):
    """List-backed store. transaction() snapshots and restores on error."""

    def __init__(self):
        self.records: List[UnitConversion] = []
        self.transactions = 0

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        snapshot = copy.deepcopy(self.records)
        self.transactions += 1
        try:
            yield self
        except BaseException:
            self.records = snapshot
            raise

    def _key(self, record: UnitConversion) -> Tuple[str, str, str, str]:
        return (record.unitable_type, record.unitable_id, record.from_unit_code, record.to_unit_code)

    def _matches(self, record: UnitConversion, query: Dict[str, Any]) -> bool:
        return all(getattr(record, field) == value for field, value in query.items())

    async def delete_all_for_entity(self, entity: EntityRef, session=None) -> int:
        query = entity.as_query()
        before = len(self.records)
        self.records = [r for r in self.records if not self._matches(r, query)]
        return before - len(self.records)

    async def insert_many(self, records: List[UnitConversion], session=None) -> int:
        existing: Set[Tuple[str, str, str, str]] = {self._key(r) for r in self.records}
        for record in records:
            key = self._key(record)
            if key in existing:
                raise DuplicateKeyError(f"Duplicate unit conversion {key}")
            existing.add(key)
        self.records.extend(records)
        return len(records)

    async def find_active_edge(self, entity: EntityRef, from_code: str,
                               to_code: Optional[str] = None) -> Optional[UnitConversion]:
        query = _edge_query(entity, from_code, to_code, active_only=True)
        return next((r for r in self.records if self._matches(r, query)), None)

    async def list_edges(self, entity: EntityRef, is_derived: Optional[bool] = None,
                         active_only: bool = True) -> List[UnitConversion]:
        query = _edge_query(entity, is_derived=is_derived, active_only=active_only)
        return [r for r in self.records if self._matches(r, query)]

    async def upsert_edge(self, entity: EntityRef, from_code: str, to_code: str, quantity: float,
                          is_derived: bool = False, session=None) -> UnitConversion:
        query = _edge_query(entity, from_code, to_code)
        for record in self.records:
            if self._matches(record, query):
                record.quantity = quantity
                record.is_derived = is_derived
                record.is_active = True
                record.updated_at = datetime.now(timezone.utc).isoformat()
                return record
        return await self.insert(entity, from_code, to_code, quantity, is_derived=is_derived)

    async def delete_edges(self, entity: EntityRef, from_code: str, to_code: Optional[str] = None,
                           session=None) -> int:
        query = _edge_query(entity, from_code, to_code)
        before = len(self.records)
        self.records = [r for r in self.records if not self._matches(r, query)]
        return before - len(self.records)

    async def list_entities(self) -> List[EntityRef]:
        refs = {r.entity for r in self.records if not r.is_derived and r.is_active}
        return sorted(refs, key=lambda r: (r.type, r.id))
