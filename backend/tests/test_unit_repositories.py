# backend/tests/test_unit_repositories.py

"""
Unit tests for the unit catalog and conversion store

Tests cover:
- Mongo catalog queries (active/standard filters, sort order)
- Mongo conversion store writes, upsert and entity listing
- Transactions with and without a client
- In-memory store rollback and uniqueness
"""

import pytest
import sys
from pathlib import Path

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

sys.path.insert(0, str(Path(__file__).parent.parent))

from unit_conversion_engine import UnitConversionService
from unit_conversion_models import EntityRef, Unit, UnitConversion
from unit_repositories import (
    InMemoryConversionStore,
    MongoConversionStore,
    MongoUnitCatalog,
)
from conftest import make_units


def _matches(doc, query):
    for field, expected in query.items():
        if isinstance(expected, dict) and "$in" in expected:
            if doc.get(field) not in expected["$in"]:
                return False
        elif doc.get(field) != expected:
            return False
    return True


class MockResult:
    def __init__(self, deleted_count=0):
        self.deleted_count = deleted_count


class MockCursor:
    """Mock motor cursor"""
    def __init__(self, docs):
        self.docs = docs

    def sort(self, keys):
        for field, direction in reversed(keys):
            self.docs.sort(key=lambda d: d.get(field), reverse=direction < 0)
        return self

    async def to_list(self, length):
        return self.docs if length is None else self.docs[:length]


class MockCollection:
    """Mock MongoDB collection"""
    def __init__(self, docs=None):
        self.docs = [dict(d) for d in docs or []]
        self.indexes = []
        self.sessions = []

    def find(self, query, projection=None):
        return MockCursor([dict(d) for d in self.docs if _matches(d, query)])

    async def find_one(self, query, projection=None):
        return next((dict(d) for d in self.docs if _matches(d, query)), None)

    async def insert_many(self, docs, session=None):
        self.sessions.append(session)
        self.docs.extend(dict(d) for d in docs)

    async def delete_many(self, query, session=None):
        self.sessions.append(session)
        before = len(self.docs)
        self.docs = [d for d in self.docs if not _matches(d, query)]
        return MockResult(before - len(self.docs))

    async def update_one(self, query, update, upsert=False, session=None):
        self.sessions.append(session)
        for doc in self.docs:
            if _matches(doc, query):
                doc.update(update.get("$set", {}))
                return
        if upsert:
            doc = dict(query)
            doc.update(update.get("$setOnInsert", {}))
            doc.update(update.get("$set", {}))
            self.docs.append(doc)

    async def find_one_and_update(self, query, update, projection=None, upsert=False,
                                  return_document=ReturnDocument.BEFORE, session=None):
        self.sessions.append(session)
        for doc in self.docs:
            if _matches(doc, query):
                before = dict(doc)
                doc.update(update.get("$set", {}))
                return dict(doc) if return_document == ReturnDocument.AFTER else before
        if upsert:
            doc = dict(query)
            doc.update(update.get("$setOnInsert", {}))
            doc.update(update.get("$set", {}))
            self.docs.append(doc)
            return dict(doc) if return_document == ReturnDocument.AFTER else None
        return None

    async def create_index(self, keys, **kwargs):
        self.indexes.append((keys, kwargs))
        return kwargs.get("name")


class MockDB(dict):
    """Mock MongoDB database"""
    def __missing__(self, name):
        self[name] = MockCollection()
        return self[name]


class MockTransaction:
    def __init__(self, session):
        self.session = session

    async def __aenter__(self):
        self.session.events.append("start")

    async def __aexit__(self, exc_type, exc, tb):
        self.session.events.append("abort" if exc_type else "commit")
        return False


class MockSession:
    def __init__(self):
        self.events = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.events.append("end")
        return False

    def start_transaction(self):
        return MockTransaction(self)


class MockClient:
    def __init__(self):
        self.session = MockSession()

    async def start_session(self):
        return self.session


def unit_docs():
    return [u.model_dump() for u in make_units()]


def conversion_doc(entity, from_code, to_code, quantity, is_derived=False, is_active=True):
    return UnitConversion(
        unitable_type=entity.type,
        unitable_id=entity.id,
        from_unit_code=from_code,
        to_unit_code=to_code,
        quantity=quantity,
        is_derived=is_derived,
        is_active=is_active,
    ).model_dump()


class TestMongoUnitCatalog:
    """Test catalog queries against a mock collection"""

    @pytest.mark.asyncio
    async def test_find_by_code(self):
        catalog = MongoUnitCatalog(MockCollection(unit_docs()))

        unit = await catalog.find_by_code("kg")

        assert unit.type == "mass"
        assert unit.value == 1000
        assert await catalog.find_by_code("crate") is None

    @pytest.mark.asyncio
    async def test_find_by_codes(self):
        catalog = MongoUnitCatalog(MockCollection(unit_docs()))

        units = await catalog.find_by_codes(["ctn", "bag", "crate"])

        assert {u.code for u in units} == {"ctn", "bag"}

    @pytest.mark.asyncio
    async def test_standard_units_active_only(self):
        catalog = MongoUnitCatalog(MockCollection(unit_docs()))

        units = await catalog.find_standard_by_types(["mass"])

        assert [u.code for u in units] == ["g", "kg", "twct"]

    @pytest.mark.asyncio
    async def test_list_units_sorted_by_sort_order(self):
        catalog = MongoUnitCatalog(MockCollection(unit_docs()))

        units = await catalog.list_units("count")
        everything = await catalog.list_units("count", active_only=False)

        assert [u.code for u in units] == ["ctn", "bag", "pcs"]
        assert [u.code for u in everything] == ["ctn", "bag", "pcs", "box_old"]

    @pytest.mark.asyncio
    async def test_save_unit_upserts(self):
        collection = MockCollection()
        catalog = MongoUnitCatalog(collection)

        await catalog.save_unit(Unit(code="t", type="mass", value=1_000_000, is_standard=True))
        await catalog.save_unit(Unit(code="t", type="mass", value=1_000_000, is_standard=True, sort_order=5))

        assert len(collection.docs) == 1
        assert (await catalog.find_by_code("t")).sort_order == 5

    @pytest.mark.asyncio
    async def test_list_codes(self):
        catalog = MongoUnitCatalog(MockCollection(unit_docs()))

        assert "oz_old" in await catalog.list_codes()


class TestMongoConversionStore:
    """Test conversion store against a mock collection"""

    @pytest.mark.asyncio
    async def test_insert_and_list(self, product):
        collection = MockCollection()
        store = MongoConversionStore(collection)

        await store.insert(product, "ctn", "bag", 6)
        await store.insert(product, "ctn", "twct", 10.8, is_derived=True)
        await store.insert(product, "pcs", "bag", 2, is_active=False)

        assert len(await store.list_edges(product)) == 2
        assert len(await store.list_edges(product, active_only=False)) == 3
        derived = await store.list_edges(product, is_derived=True)
        assert [e.to_unit_code for e in derived] == ["twct"]

    @pytest.mark.asyncio
    async def test_entity_id_stored_as_string(self, product):
        collection = MockCollection()
        store = MongoConversionStore(collection)

        await store.insert(product, "ctn", "bag", 6)

        assert collection.docs[0]["unitable_id"] == "42"
        assert "_id" not in collection.docs[0]

    @pytest.mark.asyncio
    async def test_find_active_edge(self, product):
        store = MongoConversionStore(MockCollection([
            conversion_doc(product, "ctn", "bag", 6, is_active=False),
            conversion_doc(product, "ctn", "twct", 10.8),
        ]))

        edge = await store.find_active_edge(product, "ctn")

        assert edge.to_unit_code == "twct"
        assert await store.find_active_edge(product, "ctn", "bag") is None

    @pytest.mark.asyncio
    async def test_upsert_edge_updates_in_place(self, product):
        collection = MockCollection([conversion_doc(product, "ctn", "bag", 6, is_active=False)])
        store = MongoConversionStore(collection)
        original = dict(collection.docs[0])

        record = await store.upsert_edge(product, "ctn", "bag", 12)

        assert len(collection.docs) == 1
        assert collection.docs[0]["quantity"] == 12
        assert collection.docs[0]["is_active"] is True
        assert collection.docs[0]["id"] == original["id"]
        assert record.id == original["id"]
        assert record.created_at == original["created_at"]
        assert record.quantity == 12

    @pytest.mark.asyncio
    async def test_upsert_edge_inserts(self, product):
        collection = MockCollection()
        store = MongoConversionStore(collection)

        record = await store.upsert_edge(product, "ctn", "bag", 6)

        edge = await store.find_active_edge(product, "ctn", "bag")
        assert edge.quantity == 6
        assert edge.id == record.id
        assert edge.is_derived is False

    @pytest.mark.asyncio
    async def test_delete_edges(self, product):
        collection = MockCollection([
            conversion_doc(product, "ctn", "bag", 6),
            conversion_doc(product, "ctn", "twct", 10.8, is_derived=True),
            conversion_doc(product, "bag", "ctn", 1 / 6),
        ])
        store = MongoConversionStore(collection)

        assert await store.delete_edges(product, "ctn", "bag") == 1
        assert await store.delete_edges(product, "ctn") == 1
        assert await store.delete_all_for_entity(product) == 1

    @pytest.mark.asyncio
    async def test_list_entities_skips_derived_and_inactive_only(self):
        a = EntityRef.of("product", 2)
        b = EntityRef.of("material", 1)
        c = EntityRef.of("product", 3)
        d = EntityRef.of("product", 4)
        store = MongoConversionStore(MockCollection([
            conversion_doc(a, "ctn", "bag", 6),
            conversion_doc(a, "bag", "ctn", 1 / 6),
            conversion_doc(b, "bag", "kg", 25),
            conversion_doc(c, "ctn", "kg", 3, is_derived=True),
            conversion_doc(d, "ctn", "bag", 6, is_active=False),
        ]))

        assert await store.list_entities() == [b, a]

    @pytest.mark.asyncio
    async def test_ensure_indexes(self):
        collection = MockCollection()
        store = MongoConversionStore(collection)

        await store.ensure_indexes()

        names = [kwargs["name"] for _, kwargs in collection.indexes]
        assert names == ["unit_conv_unique", "unitable_idx"]
        assert collection.indexes[0][1]["unique"] is True


class TestMongoTransactions:
    """Test session handling"""

    @pytest.mark.asyncio
    async def test_without_client_yields_none(self, product):
        collection = MockCollection()
        store = MongoConversionStore(collection)

        async with store.transaction() as session:
            await store.insert(product, "ctn", "bag", 6, session=session)

        assert session is None
        assert collection.sessions == [None]

    @pytest.mark.asyncio
    async def test_with_client_passes_session(self, product):
        collection = MockCollection()
        client = MockClient()
        store = MongoConversionStore(collection, client=client)

        async with store.transaction() as session:
            await store.delete_all_for_entity(product, session=session)
            await store.insert(product, "ctn", "bag", 6, session=session)

        assert collection.sessions == [client.session, client.session]
        assert client.session.events == ["start", "commit", "end"]

    @pytest.mark.asyncio
    async def test_error_aborts_transaction(self):
        client = MockClient()
        store = MongoConversionStore(MockCollection(), client=client)

        with pytest.raises(RuntimeError):
            async with store.transaction():
                raise RuntimeError("boom")

        assert client.session.events == ["start", "abort", "end"]


class TestInMemoryConversionStore:
    """Test the in-memory store"""

    @pytest.mark.asyncio
    async def test_duplicate_key_rejected(self, product):
        store = InMemoryConversionStore()
        await store.insert(product, "ctn", "bag", 6)

        with pytest.raises(DuplicateKeyError):
            await store.insert(product, "ctn", "bag", 12)

    @pytest.mark.asyncio
    async def test_same_pair_allowed_for_other_entity(self, product):
        store = InMemoryConversionStore()
        await store.insert(product, "ctn", "bag", 6)

        await store.insert(EntityRef.of("product", 43), "ctn", "bag", 6)

        assert len(store.records) == 2

    @pytest.mark.asyncio
    async def test_transaction_rolls_back(self, product):
        store = InMemoryConversionStore()
        await store.insert(product, "ctn", "bag", 6)

        with pytest.raises(DuplicateKeyError):
            async with store.transaction() as session:
                await store.delete_all_for_entity(product, session=session)
                await store.insert(product, "bag", "ctn", 1 / 6, session=session)
                await store.insert(product, "bag", "ctn", 1 / 6, session=session)

        assert [(r.from_unit_code, r.to_unit_code) for r in store.records] == [("ctn", "bag")]

    @pytest.mark.asyncio
    async def test_upsert_edge(self, product):
        store = InMemoryConversionStore()
        await store.insert(product, "ctn", "bag", 6, is_active=False)

        await store.upsert_edge(product, "ctn", "bag", 12)

        assert len(store.records) == 1
        assert store.records[0].quantity == 12
        assert store.records[0].is_active is True

    @pytest.mark.asyncio
    async def test_list_entities_skips_inactive_primaries(self, product):
        store = InMemoryConversionStore()
        await store.insert(product, "ctn", "bag", 6, is_active=False)
        await store.insert(EntityRef.of("product", 1), "ctn", "bag", 6)

        assert await store.list_entities() == [EntityRef.of("product", 1)]


class TestServiceFromMongo:
    """Test wiring onto named collections"""

    @pytest.mark.asyncio
    async def test_uses_configured_collections(self):
        db = MockDB()
        db["cfg_units"] = MockCollection(unit_docs())

        service = UnitConversionService.from_mongo(db)
        await service.ensure_indexes()

        assert await service.converter.convert(2, "kg", "g") == 2000
        assert set(db) == {"cfg_units", "cfg_unit_conversions"}
        assert len(db["cfg_unit_conversions"].indexes) == 2

