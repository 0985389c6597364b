# backend/unit_conversion_models.py

"""
Unit Conversion - data contracts and error classes

Units are master data (code, measurement type, value against the type's base
unit). Conversions are owned by a "unitable" entity (product, material, ...)
referenced only through an opaque (type, id) pair.

Convention for every conversion record and declaration:
    1 from_unit = quantity to_unit
"""

from typing import Any, Dict, List, Optional, Union
from datetime import datetime, timezone
import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ==================== ERROR CLASSES ====================

class UnitConversionError(Exception):
    """Base unit conversion error"""
    def __init__(self, error_code: str, message: str, field: Optional[str] = None, severity: str = "HARD_ERROR"):
        self.error_code = error_code
        self.message = message
        self.field = field
        self.severity = severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "field": self.field,
            "severity": self.severity,
        }


class InvalidConversionError(UnitConversionError):
    """Primary declaration with a non-positive quantity"""
    def __init__(self, from_code: str, to_code: str, quantity: Any):
        super().__init__(
            "INVALID_CONVERSION",
            f"Conversion {from_code} → {to_code} must have a positive quantity. Received: {quantity}",
            field="qty",
        )


class UnitNotFoundError(UnitConversionError):
    """Unit code unknown or inactive"""
    def __init__(self, code: str):
        self.code = code
        super().__init__(
            "UNIT_NOT_FOUND",
            f"Unit not found: {code}",
            field="unit_code",
        )


class ConversionNotFoundError(UnitConversionError):
    """No conversion path between two units"""
    def __init__(self, from_code: str, to_code: str, reason: Optional[str] = None):
        self.from_code = from_code
        self.to_code = to_code
        message = reason or f"No conversion path found from {from_code} to {to_code}"
        super().__init__(
            "CONVERSION_NOT_FOUND",
            message,
            field="to_unit_code",
        )


class UnitTypeMismatchError(UnitConversionError):
    """Direct unit-to-unit conversion between incompatible units"""
    def __init__(self, message: str):
        super().__init__(
            "UNIT_TYPE_MISMATCH",
            message,
            field="type",
        )


# ==================== DATA MODELS ====================

def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Unit(BaseModel):
    """Unit master data record"""
    model_config = ConfigDict(extra="ignore")

    code: str
    type: str  # mass, volume, length, count, ...
    value: Optional[float] = Field(default=None, gt=0)  # against the type's base unit (value=1)
    translations: Dict[str, str] = Field(default_factory=dict)
    is_standard: bool = False
    is_active: bool = True
    sort_order: int = 0

    @model_validator(mode="after")
    def _standard_units_need_value(self) -> "Unit":
        if self.is_standard and self.value is None:
            raise ValueError(f"Standard unit '{self.code}' requires a positive value")
        return self

    def get_name(self, locale: Optional[str] = None, fallback_locale: str = "en") -> str:
        """Translated name for locale, then fallback locale, then the code itself"""
        if locale and locale in self.translations:
            return self.translations[locale]
        if fallback_locale in self.translations:
            return self.translations[fallback_locale]
        return self.code

    def get_label(self, locale: Optional[str] = None, fallback_locale: str = "en") -> str:
        return f"{self.code} {self.get_name(locale, fallback_locale)}"

    def is_convertible_with(self, other: "Unit") -> bool:
        """Two standard units are convertible iff they share measurement type"""
        return self.is_standard and other.is_standard and self.type == other.type

    def convert_to(self, to_unit: "Unit", quantity: float) -> float:
        """
        Convert quantity from this unit to another unit.

        Only works for standard units of the same type.

        Raises:
            UnitTypeMismatchError: If types differ or either unit is non-standard
        """
        if self.type != to_unit.type:
            raise UnitTypeMismatchError(
                f"Cannot convert between different types: {self.type} and {to_unit.type}"
            )
        if not self.is_standard or not to_unit.is_standard:
            raise UnitTypeMismatchError("Both units must be standard units for direct conversion")

        return quantity * self.value / to_unit.value


class EntityRef(BaseModel):
    """Polymorphic reference to the entity owning conversions"""
    model_config = ConfigDict(frozen=True)

    type: str
    id: str

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, value: Union[str, int]) -> str:
        return str(value)

    @classmethod
    def of(cls, entity_type: str, entity_id: Union[str, int]) -> "EntityRef":
        return cls(type=entity_type, id=entity_id)

    def cache_fragment(self) -> str:
        return f"{self.type}_{self.id}"

    def as_query(self) -> Dict[str, str]:
        return {"unitable_type": self.type, "unitable_id": self.id}


class PrimaryConversion(BaseModel):
    """User declaration: 1 from = qty to"""
    model_config = ConfigDict(populate_by_name=True)

    from_code: str = Field(alias="from")
    to_code: str = Field(alias="to")
    qty: float

    @classmethod
    def coerce(cls, item: Union["PrimaryConversion", Dict[str, Any]]) -> "PrimaryConversion":
        if isinstance(item, cls):
            return item
        return cls.model_validate(item)


class UnitConversion(BaseModel):
    """Persisted conversion edge (unique per entity, from, to)"""
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    unitable_type: str
    unitable_id: str
    from_unit_code: str
    to_unit_code: str
    quantity: float
    is_derived: bool = False
    is_active: bool = True
    created_at: str = Field(default_factory=_utcnow_iso)
    updated_at: str = Field(default_factory=_utcnow_iso)

    @property
    def entity(self) -> EntityRef:
        return EntityRef(type=self.unitable_type, id=self.unitable_id)


class ConversionRequest(BaseModel):
    """Resolver input contract"""
    quantity: float
    from_code: str
    to_code: str
    entity: Optional[EntityRef] = None


class ExpansionResult(BaseModel):
    """Outcome of one expansion run"""
    entity: EntityRef
    unit_codes: List[str] = []
    primary_count: int = 0
    derived_count: int = 0
    cleared: bool = False
