# backend/unit_conversion_config.py

"""
Unit conversion settings.

Values come from the process environment, optionally seeded from backend/.env.
Every key has a default so the engine can run without any configuration
(in-memory stores and cache, used by tests and scripts).
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in TRUE_VALUES


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class CacheSettings(BaseModel):
    """Cache settings for unit definitions and entity conversion maps"""
    enabled: bool = True
    ttl: int = Field(default=3600, ge=0)  # seconds, unit definitions
    entity_ttl: Optional[int] = Field(default=3600, ge=0)  # seconds, None → ttl
    prefix: str = "unit_conversion_"

    @property
    def effective_entity_ttl(self) -> int:
        return self.ttl if self.entity_ttl is None else self.entity_ttl


class UnitConversionSettings(BaseModel):
    """Top-level settings"""
    mongo_url: Optional[str] = None
    db_name: Optional[str] = None
    units_collection: str = "cfg_units"
    conversions_collection: str = "cfg_unit_conversions"
    default_locale: Optional[str] = None
    fallback_locale: str = "en"
    cache: CacheSettings = Field(default_factory=CacheSettings)

    @classmethod
    def from_env(cls) -> "UnitConversionSettings":
        """Build settings from MONGO_URL, DB_NAME and UNIT_CONVERSION_* variables"""
        cache = CacheSettings(
            enabled=_env_bool("UNIT_CONVERSION_CACHE_ENABLED", True),
            ttl=_env_int("UNIT_CONVERSION_CACHE_TTL", 3600),
            entity_ttl=_env_int("UNIT_CONVERSION_ENTITY_CACHE_TTL", None),
            prefix=os.environ.get("UNIT_CONVERSION_CACHE_PREFIX", "unit_conversion_"),
        )
        return cls(
            mongo_url=os.environ.get("MONGO_URL"),
            db_name=os.environ.get("DB_NAME"),
            units_collection=os.environ.get("UNIT_CONVERSION_UNITS_COLLECTION", "cfg_units"),
            conversions_collection=os.environ.get(
                "UNIT_CONVERSION_CONVERSIONS_COLLECTION", "cfg_unit_conversions"
            ),
            default_locale=os.environ.get("UNIT_CONVERSION_DEFAULT_LOCALE") or None,
            fallback_locale=os.environ.get("UNIT_CONVERSION_FALLBACK_LOCALE", "en"),
            cache=cache,
        )
