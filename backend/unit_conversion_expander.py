# backend/unit_conversion_expander.py

"""
Unit Conversion Expander

Users declare only the primary conversions of an entity, e.g.
    1 ctn = 6 bag, 1 bag = 1.8 twct
and the expander derives and stores every other combination:
    ctn→bag, ctn→twct, ctn→kg, ctn→g, bag→twct, bag→kg, bag→g ... and all inverses.

Pipeline (one entity, one transaction):
1) ConversionGraphBuilder: declarations + inverses + all standard-unit pairs
   of the measurement types involved
2) ClosureEngine: all-pairs closure, first discovered path wins
3) ConversionPersister: delete everything for the entity, write primaries
   (and inverses) as non-derived, every other pair as derived

INVARIANTS:
- Every non-derived edge (A→B, q) is stored with its inverse (B→A, 1/q)
- One record per (entity, from, to) after expansion
- Expansion never edits records in place; the entity's set is replaced
- A resolved closure pair is never overwritten by a later path
"""

from collections import OrderedDict, defaultdict
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
import asyncio
import logging
import math
import weakref

from unit_conversion_cache import UnitConversionCache
from unit_conversion_models import (
    EntityRef,
    ExpansionResult,
    InvalidConversionError,
    PrimaryConversion,
    Unit,
    UnitConversion,
    UnitNotFoundError,
)
from unit_repositories import ConversionStore, UnitCatalog

logger = logging.getLogger(__name__)

ConversionGraph = Dict[str, Dict[str, float]]
ClosurePair = Tuple[str, str, float]
Declaration = Union[PrimaryConversion, Mapping[str, Any]]


def validate_declarations(declarations: Iterable[Declaration]) -> List[PrimaryConversion]:
    """
    Coerce declarations and reject invalid ones.

    Raises:
        InvalidConversionError: qty not a finite positive number, or from == to
    """
    validated = []
    for item in declarations:
        conv = PrimaryConversion.coerce(item)
        if not math.isfinite(conv.qty) or conv.qty <= 0:
            raise InvalidConversionError(conv.from_code, conv.to_code, conv.qty)
        if conv.from_code == conv.to_code:
            raise InvalidConversionError(conv.from_code, conv.to_code, f"{conv.qty} (same unit)")
        validated.append(conv)
    return validated


def collect_unit_codes(declarations: Sequence[PrimaryConversion]) -> List[str]:
    """Codes referenced by declarations, first appearance order"""
    codes: Dict[str, None] = {}
    for conv in declarations:
        codes.setdefault(conv.from_code, None)
        codes.setdefault(conv.to_code, None)
    return list(codes)


# ==================== GRAPH BUILDER ====================

class ConversionGraphBuilder:
    """
    Builds the weighted directed graph for one expansion.

    graph['bag']['twct'] = 1.8 means 1 bag = 1.8 twct.
    """

    def __init__(self, catalog: UnitCatalog):
        self.catalog = catalog

    async def collect_units(self, declarations: Sequence[PrimaryConversion]) -> Dict[str, Unit]:
        """Declared units found in the catalog, plus active standard units of their types"""
        declared = await self.catalog.find_by_codes(collect_unit_codes(declarations))
        units: Dict[str, Unit] = {unit.code: unit for unit in declared}

        types = {unit.type for unit in declared if unit.type}
        if not types:
            return units

        for unit in await self.catalog.find_standard_by_types(types):
            units.setdefault(unit.code, unit)
        return units

    def build(self, declarations: Sequence[PrimaryConversion], units: Mapping[str, Unit]) -> ConversionGraph:
        graph: ConversionGraph = {}

        # Declared conversions and their inverses (later declarations overwrite)
        for conv in declarations:
            if conv.qty <= 0:
                raise InvalidConversionError(conv.from_code, conv.to_code, conv.qty)
            graph.setdefault(conv.from_code, {})[conv.to_code] = conv.qty
            graph.setdefault(conv.to_code, {})[conv.from_code] = 1 / conv.qty

        # Standard units of one type are all mutually convertible
        standard_by_type: Dict[str, List[Unit]] = defaultdict(list)
        for unit in units.values():
            if unit.is_standard:
                standard_by_type[unit.type].append(unit)

        for standard_units in standard_by_type.values():
            for from_unit in standard_units:
                for to_unit in standard_units:
                    if from_unit.code == to_unit.code:
                        continue
                    # result = qty × from.value / to.value
                    graph.setdefault(from_unit.code, {})[to_unit.code] = from_unit.value / to_unit.value

        return graph


# ==================== CLOSURE ENGINE ====================

class ClosureEngine:
    """
    All-pairs closure over conversion factors (Floyd-Warshall iteration order).

    dist[i][j] = how many unit j make one unit i. A pair that already has a
    factor keeps it: the first path found wins, there is no "best" path. With
    conflicting declarations the result depends on the order of intermediates,
    so codes are processed in sorted order to keep runs deterministic.
    """

    def compute(self, graph: Mapping[str, Mapping[str, float]], unit_codes: Iterable[str]) -> List[ClosurePair]:
        codes = sorted(set(unit_codes))
        index = {code: i for i, code in enumerate(codes)}
        n = len(codes)

        dist: List[List[Optional[float]]] = [[None] * n for _ in range(n)]
        for i, code in enumerate(codes):
            dist[i][i] = 1.0
            for to_code, factor in graph.get(code, {}).items():
                j = index.get(to_code)
                if j is not None and j != i:
                    dist[i][j] = factor

        for k in range(n):
            row_k = dist[k]
            for i in range(n):
                if i == k:
                    continue
                via = dist[i][k]
                if via is None:
                    continue
                row_i = dist[i]
                for j in range(n):
                    if i == j or row_i[j] is not None:
                        continue
                    if row_k[j] is not None:
                        row_i[j] = via * row_k[j]

        return [
            (codes[i], codes[j], dist[i][j])
            for i in range(n)
            for j in range(n)
            if i != j and dist[i][j] is not None
        ]


# ==================== PERSISTER ====================

class ConversionPersister:
    """Replaces an entity's conversion records inside one store transaction"""

    def __init__(self, store: ConversionStore):
        self.store = store

    async def clear(self, entity: EntityRef) -> ExpansionResult:
        async with self.store.transaction() as session:
            deleted = await self.store.delete_all_for_entity(entity, session=session)
        logger.info(f"Cleared {deleted} unit conversion(s) for {entity.type}#{entity.id}")
        return ExpansionResult(entity=entity, cleared=True)

    async def persist(
        self,
        entity: EntityRef,
        declarations: Sequence[PrimaryConversion],
        closure: Sequence[ClosurePair],
        units: Mapping[str, Unit],
    ) -> ExpansionResult:
        """
        Write primaries and derived pairs for entity.

        Raises:
            UnitNotFoundError: A declared code is unknown or inactive
                               (raised before anything is deleted)
        """
        for code in collect_unit_codes(declarations):
            unit = units.get(code)
            if unit is None or not unit.is_active:
                raise UnitNotFoundError(code)

        # (from, to) → qty, last declaration wins so the unique key holds
        primary: "OrderedDict[Tuple[str, str], float]" = OrderedDict()
        for conv in declarations:
            primary[(conv.from_code, conv.to_code)] = conv.qty
            primary[(conv.to_code, conv.from_code)] = 1 / conv.qty

        records = [
            self._record(entity, from_code, to_code, qty, is_derived=False)
            for (from_code, to_code), qty in primary.items()
        ]
        derived = [
            self._record(entity, from_code, to_code, qty, is_derived=True)
            for from_code, to_code, qty in closure
            if (from_code, to_code) not in primary
        ]

        async with self.store.transaction() as session:
            await self.store.delete_all_for_entity(entity, session=session)
            await self.store.insert_many(records + derived, session=session)

        return ExpansionResult(
            entity=entity,
            unit_codes=sorted(units),
            primary_count=len(records),
            derived_count=len(derived),
        )

    @staticmethod
    def _record(entity: EntityRef, from_code: str, to_code: str, qty: float, is_derived: bool) -> UnitConversion:
        return UnitConversion(
            unitable_type=entity.type,
            unitable_id=entity.id,
            from_unit_code=from_code,
            to_unit_code=to_code,
            quantity=qty,
            is_derived=is_derived,
            is_active=True,
        )


# ==================== EXPANDER ====================

class UnitConversionExpander:
    """
    Entry point: expand(entity, declarations).

    Expansions of the same entity are serialized in-process with a per-entity
    lock; across processes the store transaction is the only guard. The
    entity's cached conversion map is forgotten after every successful run.
    """

    def __init__(self, catalog: UnitCatalog, store: ConversionStore,
                 cache: Optional[UnitConversionCache] = None):
        self.builder = ConversionGraphBuilder(catalog)
        self.closure = ClosureEngine()
        self.persister = ConversionPersister(store)
        self.cache = cache
        self._locks: "weakref.WeakValueDictionary[EntityRef, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, entity: EntityRef) -> asyncio.Lock:
        lock = self._locks.get(entity)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[entity] = lock
        return lock

    async def expand(self, entity: EntityRef, declarations: Iterable[Declaration]) -> ExpansionResult:
        """
        Replace entity's conversions with the expansion of declarations.

        An empty declaration list deletes every conversion of the entity.

        Raises:
            InvalidConversionError: Non-positive quantity
            UnitNotFoundError: Declared unit unknown or inactive
        """
        validated = validate_declarations(declarations)

        lock = self._lock_for(entity)
        async with lock:
            if not validated:
                result = await self.persister.clear(entity)
            else:
                units = await self.builder.collect_units(validated)
                graph = self.builder.build(validated, units)
                pairs = self.closure.compute(graph, units.keys())
                result = await self.persister.persist(entity, validated, pairs, units)

            if self.cache is not None:
                await self.cache.forget_conversion_map(entity)

        if not result.cleared:
            logger.info(
                f"Expanded unit conversions for {entity.type}#{entity.id}: "
                f"{result.primary_count} primary, {result.derived_count} derived "
                f"over {len(result.unit_codes)} unit(s)"
            )
        return result
