#!/usr/bin/env python3
"""
Migration script to re-expand unit conversions for every entity.

Entities whose conversions were stored before auto-expansion only have
primary edges; lookups then go through the one-hop fallback. This script
re-declares each entity's stored primary edges so the derived records exist.

Usage: python rebuild_unit_conversions.py [--execute] [--unitable-type product]
"""

import asyncio
from motor.motor_asyncio import AsyncIOMotorClient
from typing import Dict, List, Optional, Tuple

from unit_conversion_config import UnitConversionSettings
from unit_conversion_engine import UnitConversionService
from unit_conversion_models import PrimaryConversion, UnitConversion, UnitConversionError


def primary_declarations(edges: List[UnitConversion]) -> List[PrimaryConversion]:
    """Stored primary edges → declarations, skipping the materialized inverses"""
    seen: Dict[Tuple[str, str], None] = {}
    declarations = []
    for edge in edges:
        if (edge.to_unit_code, edge.from_unit_code) in seen:
            continue
        seen[(edge.from_unit_code, edge.to_unit_code)] = None
        declarations.append(PrimaryConversion(
            from_code=edge.from_unit_code,
            to_code=edge.to_unit_code,
            qty=edge.quantity,
        ))
    return declarations


async def rebuild_conversions(service: UnitConversionService, dry_run: bool = True,
                              unitable_type: Optional[str] = None) -> Dict[str, int]:
    """Re-expand every entity owning primary conversions"""

    print("=" * 80)
    print("MIGRATION: Re-expand unit conversions")
    print("=" * 80)
    if dry_run:
        print("⚠️  DRY RUN MODE - No changes will be made")
    else:
        print("✓ LIVE MODE - Changes will be applied")
    print()

    entities = await service.store.list_entities()
    if unitable_type:
        entities = [e for e in entities if e.type == unitable_type]

    print(f"Found {len(entities)} entit(y/ies) with primary conversions")
    print()

    stats = {"checked": len(entities), "rebuilt": 0, "skipped": 0, "errors": 0}

    for entity in entities:
        label = f"{entity.type}#{entity.id}"
        edges = await service.conversions.get_primary_conversions(entity)
        declarations = primary_declarations(edges)

        if not declarations:
            print(f"  ⚠️  {label}: no active primary conversions, skipped")
            stats["skipped"] += 1
            continue

        if dry_run:
            derived = await service.conversions.get_derived_conversions(entity)
            print(f"  = {label}: {len(declarations)} declaration(s), {len(derived)} derived record(s) today")
            continue

        try:
            result = await service.expander.expand(entity, declarations)
        except UnitConversionError as e:
            print(f"  ❌ {label}: {e.error_code} - {e.message}")
            stats["errors"] += 1
            continue

        print(f"  ✓ {label}: {result.primary_count} primary, {result.derived_count} derived")
        stats["rebuilt"] += 1

    print()
    print("=" * 80)
    print("SUMMARY")
    print("=" * 80)
    print(f"Entities checked: {stats['checked']}")
    print(f"Rebuilt: {stats['rebuilt']}")
    print(f"Skipped: {stats['skipped']}")
    print(f"Errors: {stats['errors']}")

    if dry_run:
        print()
        print("⚠️  This was a dry run. Run with --execute to apply changes.")

    return stats


async def main():
    import argparse

    parser = argparse.ArgumentParser(description='Re-expand unit conversions for every entity')
    parser.add_argument('--execute', action='store_true', help='Actually apply changes (default is dry-run)')
    parser.add_argument('--unitable-type', help='Only rebuild entities of this type')

    args = parser.parse_args()

    settings = UnitConversionSettings.from_env()
    if not settings.mongo_url or not settings.db_name:
        print("❌ ERROR: MONGO_URL and DB_NAME must be set")
        return

    client = AsyncIOMotorClient(settings.mongo_url)
    service = UnitConversionService.from_mongo(client[settings.db_name], settings, client=client)

    try:
        await rebuild_conversions(service, dry_run=not args.execute, unitable_type=args.unitable_type)
    except Exception as e:
        print(f"❌ ERROR: {str(e)}")
        import traceback
        traceback.print_exc()
    finally:
        client.close()

if __name__ == "__main__":
    asyncio.run(main())
