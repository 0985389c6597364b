# backend/tests/conftest.py

import pytest
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from unit_conversion_engine import UnitConversionService
from unit_conversion_models import EntityRef, Unit
from unit_repositories import InMemoryConversionStore, InMemoryUnitCatalog


def make_units():
    """Unit master data used across tests (mass base unit: g, volume base unit: L)"""
    return [
        Unit(code="g", type="mass", value=1, is_standard=True, sort_order=1,
             translations={"en": "gram", "zh_Hant": "公克"}),
        Unit(code="kg", type="mass", value=1000, is_standard=True, sort_order=2,
             translations={"en": "kilogram", "zh_Hant": "公斤"}),
        Unit(code="twct", type="mass", value=600, is_standard=True, sort_order=3,
             translations={"en": "catty", "zh_Hant": "台斤"}),
        Unit(code="oz_old", type="mass", value=28.35, is_standard=True, is_active=False, sort_order=4),
        Unit(code="L", type="volume", value=1, is_standard=True, sort_order=10,
             translations={"en": "liter"}),
        Unit(code="mL", type="volume", value=0.001, is_standard=True, sort_order=11),
        Unit(code="ctn", type="count", sort_order=20, translations={"en": "carton", "zh_Hant": "箱"}),
        Unit(code="bag", type="count", sort_order=21, translations={"en": "bag", "zh_Hant": "包"}),
        Unit(code="pcs", type="count", sort_order=22),
        Unit(code="box_old", type="count", is_active=False, sort_order=23),
    ]


@pytest.fixture
def catalog():
    return InMemoryUnitCatalog(make_units())


@pytest.fixture
def store():
    return InMemoryConversionStore()


@pytest.fixture
def service(catalog, store):
    return UnitConversionService(catalog, store)


@pytest.fixture
def product():
    return EntityRef.of("product", 42)


@pytest.fixture
def carton_declarations():
    """1 ctn = 6 bag, 1 bag = 1.8 twct"""
    return [
        {"from": "ctn", "to": "bag", "qty": 6},
        {"from": "bag", "to": "twct", "qty": 1.8},
    ]
