# backend/unit_conversion_engine.py

"""
Unit Conversion Engine - runtime conversion resolver

This engine is responsible for:
- Same-unit short-circuit (no lookups)
- Standard ↔ standard conversion by value ratio (no entity needed)
- Entity-scoped lookup in the precomputed conversion map
- Fallback one-hop bridge through a standard unit (data predating expansion)
- Entity-facing conversion operations (expand, list, set/remove, sync)

This engine MUST NOT:
- Guess units or parse free text
- Return an approximate or zero value when no path exists

RESOLUTION ORDER (convert):
1) from == to                                   → quantity
2) load both units                              → UnitNotFoundError
3) both standard, same type                     → qty × v(from) / v(to)
4) no entity                                    → ConversionNotFoundError
5) entity conversion map hit                    → qty × factor
6) first active edge from `from`, then standard bridge to `to`
7) otherwise                                    → ConversionNotFoundError
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
import logging
import math

from unit_conversion_cache import MemoryCache, UnitConversionCache
from unit_conversion_config import UnitConversionSettings
from unit_conversion_expander import Declaration, UnitConversionExpander
from unit_conversion_models import (
    ConversionNotFoundError,
    ConversionRequest,
    EntityRef,
    ExpansionResult,
    InvalidConversionError,
    Unit,
    UnitConversion,
    UnitNotFoundError,
)
from unit_repositories import (
    ConversionStore,
    InMemoryConversionStore,
    InMemoryUnitCatalog,
    MongoConversionStore,
    MongoUnitCatalog,
    UnitCatalog,
)

logger = logging.getLogger(__name__)

ConversionMap = Dict[str, Dict[str, float]]


# ==================== RESOLVER ====================

class UnitConverter:
    """
    Stateless conversion resolver.

    All state lives in the catalog, the store and the cache; one instance can
    serve concurrent requests.
    """

    def __init__(
        self,
        catalog: UnitCatalog,
        store: ConversionStore,
        cache: Optional[UnitConversionCache] = None,
        settings: Optional[UnitConversionSettings] = None,
    ):
        self.catalog = catalog
        self.store = store
        self.settings = settings or UnitConversionSettings()
        self.cache = cache or UnitConversionCache(MemoryCache(), self.settings.cache)

    async def get_unit(self, code: str) -> Unit:
        """
        Get unit by code with caching.

        Raises:
            UnitNotFoundError: Unknown or inactive code
        """
        unit = await self.cache.remember_unit(code, lambda: self.catalog.find_by_code(code))
        if unit is None or not unit.is_active:
            raise UnitNotFoundError(code)
        return unit

    @staticmethod
    def convert_standard(from_unit: Unit, to_unit: Unit, quantity: float) -> float:
        return quantity * from_unit.value / to_unit.value

    async def resolve(self, request: ConversionRequest) -> float:
        return await self.convert(request.quantity, request.from_code, request.to_code, request.entity)

    async def convert(self, quantity: float, from_code: str, to_code: str,
                      entity: Optional[EntityRef] = None) -> float:
        """
        Convert quantity between two unit codes.

        Raises:
            UnitNotFoundError: Either code unknown or inactive
            ConversionNotFoundError: No standard, entity or bridged path
        """
        if from_code == to_code:
            return quantity

        from_unit = await self.get_unit(from_code)
        to_unit = await self.get_unit(to_code)

        if from_unit.is_convertible_with(to_unit):
            return self.convert_standard(from_unit, to_unit, quantity)

        if entity is None:
            raise ConversionNotFoundError(
                from_code,
                to_code,
                f"Entity is required for non-standard unit conversion: {from_code} to {to_code}",
            )

        return await self._convert_with_entity(entity, quantity, from_code, to_unit)

    async def _convert_with_entity(self, entity: EntityRef, quantity: float,
                                   from_code: str, to_unit: Unit) -> float:
        factor = await self.get_conversion_quantity(entity, from_code, to_unit.code)
        if factor is not None:
            return quantity * factor

        # Compatibility path for entities whose conversions were never expanded
        edge = await self.store.find_active_edge(entity, from_code)
        if edge is not None:
            intermediate_qty = quantity * edge.quantity
            if edge.to_unit_code == to_unit.code:
                return intermediate_qty

            intermediate = await self.get_unit(edge.to_unit_code)
            if intermediate.is_convertible_with(to_unit):
                logger.debug(
                    f"Bridged {from_code} → {to_unit.code} through {intermediate.code} "
                    f"for {entity.type}#{entity.id}"
                )
                return self.convert_standard(intermediate, to_unit, intermediate_qty)

        raise ConversionNotFoundError(from_code, to_unit.code)

    # Entity conversion map

    async def build_conversion_map(self, entity: EntityRef) -> ConversionMap:
        conversion_map: ConversionMap = {}
        for edge in await self.store.list_active_edges(entity):
            conversion_map.setdefault(edge.from_unit_code, {})[edge.to_unit_code] = float(edge.quantity)
        return conversion_map

    async def _cached_conversion_map(self, entity: EntityRef) -> ConversionMap:
        return await self.cache.remember_conversion_map(entity, lambda: self.build_conversion_map(entity))

    async def get_conversion_map(self, entity: EntityRef) -> ConversionMap:
        """['from_code']['to_code'] → quantity, request-memoized and cached. Returns a copy."""
        conversion_map = await self._cached_conversion_map(entity)
        return {from_code: dict(targets) for from_code, targets in conversion_map.items()}

    async def get_conversion_quantity(self, entity: EntityRef, from_code: str, to_code: str) -> Optional[float]:
        if from_code == to_code:
            return 1.0
        conversion_map = await self._cached_conversion_map(entity)
        return conversion_map.get(from_code, {}).get(to_code)

    # Catalog helpers

    async def get_units(self, unit_type: Optional[str] = None, active_only: bool = True) -> List[Unit]:
        return await self.catalog.list_units(unit_type, active_only)

    async def get_standard_units(self, unit_type: Optional[str] = None) -> List[Unit]:
        return [u for u in await self.catalog.list_units(unit_type, active_only=True) if u.is_standard]

    async def clear_cache(self) -> int:
        """Forget every cached unit definition. Returns the number of entries removed."""
        cleared = 0
        for code in await self.catalog.list_codes():
            if await self.cache.forget_unit(code):
                cleared += 1
        logger.info(f"Cleared {cleared} cached unit definition(s)")
        return cleared


# ==================== ENTITY OPERATIONS ====================

class EntityConversions:
    """Conversion operations of one owning entity (product, material, ...)"""

    def __init__(self, converter: UnitConverter, expander: UnitConversionExpander):
        self.converter = converter
        self.expander = expander

    @property
    def store(self) -> ConversionStore:
        return self.converter.store

    async def set_conversions_with_expansion(self, entity: EntityRef,
                                             declarations: Iterable[Declaration]) -> ExpansionResult:
        """
        Set primary conversions and store every derived combination.

        e.g. [{'from': 'ctn', 'to': 'bag', 'qty': 6}, {'from': 'bag', 'to': 'twct', 'qty': 1.8}]
        """
        return await self.expander.expand(entity, declarations)

    async def get_unit_conversions(self, entity: EntityRef, active_only: bool = False) -> List[UnitConversion]:
        return await self.store.list_edges(entity, active_only=active_only)

    async def get_primary_conversions(self, entity: EntityRef) -> List[UnitConversion]:
        return await self.store.list_edges(entity, is_derived=False)

    async def get_derived_conversions(self, entity: EntityRef) -> List[UnitConversion]:
        return await self.store.list_edges(entity, is_derived=True)

    async def get_unit_conversion(self, entity: EntityRef, from_code: str) -> Optional[UnitConversion]:
        return await self.store.find_active_edge(entity, from_code)

    async def set_unit_conversion(self, entity: EntityRef, from_code: str, to_code: str,
                                  quantity: float) -> UnitConversion:
        """Add or update one edge. Does not expand; derived records are left as they are."""
        if quantity <= 0:
            raise InvalidConversionError(from_code, to_code, quantity)
        record = await self.store.upsert_edge(entity, from_code, to_code, quantity)
        await self.clear_conversion_cache(entity)
        return record

    async def remove_unit_conversion(self, entity: EntityRef, from_code: str,
                                     to_code: Optional[str] = None) -> bool:
        removed = await self.store.delete_edges(entity, from_code, to_code)
        await self.clear_conversion_cache(entity)
        return removed > 0

    async def sync_unit_conversions(self, entity: EntityRef, conversions: Iterable[Mapping[str, Any]]) -> None:
        """
        Legacy sync without expansion.

        conversions: [{'from_unit_code': 'bag', 'to_unit_code': 'kg', 'quantity': 1.8}, ...]
        Edges whose from-code is not in the new list are deleted, the rest upserted.
        Every quantity is validated before anything is written; writes share one transaction.
        """
        edges: List[Tuple[str, str, float]] = []
        for conversion in conversions:
            quantity = float(conversion["quantity"])
            if not math.isfinite(quantity) or quantity <= 0:
                raise InvalidConversionError(conversion["from_unit_code"], conversion["to_unit_code"], quantity)
            edges.append((conversion["from_unit_code"], conversion["to_unit_code"], quantity))

        new_codes = {from_code for from_code, _, _ in edges}
        try:
            async with self.store.transaction() as session:
                current = await self.store.list_edges(entity, active_only=False)
                for code in {e.from_unit_code for e in current} - new_codes:
                    await self.store.delete_edges(entity, code, session=session)
                for from_code, to_code, quantity in edges:
                    await self.store.upsert_edge(entity, from_code, to_code, quantity, session=session)
        finally:
            await self.clear_conversion_cache(entity)

    async def get_available_unit_codes(self, entity: EntityRef) -> List[str]:
        edges = await self.store.list_active_edges(entity)
        return list(dict.fromkeys(e.from_unit_code for e in edges))

    async def get_all_unit_codes(self, entity: EntityRef) -> List[str]:
        """Codes appearing on either side of an active edge"""
        edges = await self.store.list_active_edges(entity)
        codes = [e.from_unit_code for e in edges] + [e.to_unit_code for e in edges]
        return list(dict.fromkeys(codes))

    async def convert_unit(self, entity: EntityRef, quantity: float, from_code: str, to_code: str) -> float:
        return await self.converter.convert(quantity, from_code, to_code, entity)

    async def get_conversion_map(self, entity: EntityRef) -> ConversionMap:
        return await self.converter.get_conversion_map(entity)

    async def get_conversion_quantity(self, entity: EntityRef, from_code: str, to_code: str) -> Optional[float]:
        return await self.converter.get_conversion_quantity(entity, from_code, to_code)

    def get_conversion_cache_key(self, entity: EntityRef) -> str:
        return self.converter.cache.entity_key(entity)

    async def clear_conversion_cache(self, entity: EntityRef) -> None:
        await self.converter.cache.forget_conversion_map(entity)


# ==================== WIRING ====================

class UnitConversionService:
    """Catalog, store, cache, resolver and expander wired together"""

    def __init__(self, catalog: UnitCatalog, store: ConversionStore,
                 settings: Optional[UnitConversionSettings] = None,
                 cache: Optional[UnitConversionCache] = None):
        self.settings = settings or UnitConversionSettings()
        self.catalog = catalog
        self.store = store
        self.cache = cache or UnitConversionCache(MemoryCache(), self.settings.cache)
        self.converter = UnitConverter(catalog, store, self.cache, self.settings)
        self.expander = UnitConversionExpander(catalog, store, self.cache)
        self.conversions = EntityConversions(self.converter, self.expander)

    @classmethod
    def in_memory(cls, settings: Optional[UnitConversionSettings] = None,
                  units: Optional[Iterable[Unit]] = None) -> "UnitConversionService":
        return cls(InMemoryUnitCatalog(units), InMemoryConversionStore(), settings)

    @classmethod
    def from_mongo(cls, db, settings: Optional[UnitConversionSettings] = None,
                   client=None) -> "UnitConversionService":
        settings = settings or UnitConversionSettings()
        catalog = MongoUnitCatalog(db[settings.units_collection])
        store = MongoConversionStore(db[settings.conversions_collection], client=client)
        return cls(catalog, store, settings)

    async def ensure_indexes(self) -> None:
        for repository in (self.catalog, self.store):
            ensure = getattr(repository, "ensure_indexes", None)
            if ensure is not None:
                await ensure()
