from fastapi import FastAPI, APIRouter, HTTPException, Depends, Query
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pydantic import BaseModel
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone

from unit_conversion_cache import request_scope
from unit_conversion_config import UnitConversionSettings
from unit_conversion_engine import UnitConversionService
from unit_conversion_models import (
    ConversionNotFoundError,
    ConversionRequest,
    EntityRef,
    ExpansionResult,
    InvalidConversionError,
    PrimaryConversion,
    Unit,
    UnitConversion,
    UnitConversionError,
    UnitNotFoundError,
    UnitTypeMismatchError,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

settings = UnitConversionSettings.from_env()

app = FastAPI(title="Unit Conversion Service")

# ==================== CORS CONFIGURATION (MUST BE FIRST) ====================
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

cors_origins_env = os.environ.get('CORS_ORIGINS', '')
if cors_origins_env:
    cors_origins = [origin.strip() for origin in cors_origins_env.split(',') if origin.strip()]
else:
    cors_origins = DEFAULT_CORS_ORIGINS

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept", "Origin"],
    max_age=600,
)

# ==================== SERVICE WIRING ====================

client: Optional[AsyncIOMotorClient] = None
_service: Optional[UnitConversionService] = None


def get_service() -> UnitConversionService:
    """MongoDB-backed service when MONGO_URL/DB_NAME are set, in-memory otherwise"""
    global client, _service
    if _service is None:
        if settings.mongo_url and settings.db_name:
            client = AsyncIOMotorClient(settings.mongo_url)
            _service = UnitConversionService.from_mongo(client[settings.db_name], settings, client=client)
        else:
            logger.warning("MONGO_URL/DB_NAME not set, using in-memory unit conversion store")
            _service = UnitConversionService.in_memory(settings)
    return _service


# Typed error → HTTP status
ERROR_STATUS = {
    InvalidConversionError: 400,
    UnitTypeMismatchError: 400,
    UnitNotFoundError: 404,
    ConversionNotFoundError: 422,
}


def to_http_error(error: UnitConversionError) -> HTTPException:
    status_code = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(error, cls)),
        400,
    )
    logger.warning(f"Unit conversion failed: {error.error_code} - {error.message}")
    return HTTPException(status_code=status_code, detail=error.to_dict())


# ==================== REQUEST MODELS ====================

class ConvertPayload(BaseModel):
    quantity: float
    from_unit_code: str
    to_unit_code: str
    unitable_type: Optional[str] = None
    unitable_id: Optional[str] = None


class ConvertResponse(BaseModel):
    quantity: float
    from_unit_code: str
    to_unit_code: str
    result: float


class ExpandPayload(BaseModel):
    conversions: List[PrimaryConversion] = []


class UnitResponse(Unit):
    name: str
    label: str


def present_unit(unit: Unit, locale: Optional[str] = None) -> UnitResponse:
    """Unit with its translated name and label for locale (default locale when omitted)"""
    locale = locale or settings.default_locale
    return UnitResponse(
        **unit.model_dump(),
        name=unit.get_name(locale, settings.fallback_locale),
        label=unit.get_label(locale, settings.fallback_locale),
    )


# ==================== HEALTH ENDPOINT (ROOT LEVEL) ====================
@app.get("/api/health")
async def health_check():
    """Health check endpoint for monitoring"""
    return {
        "ok": True,
        "time": datetime.now(timezone.utc).isoformat(),
        "service": "Unit Conversion API",
        "version": "1.0.0"
    }

api_router = APIRouter(prefix="/api")

# ==================== UNIT ROUTES ====================

@api_router.get("/units", response_model=List[UnitResponse])
async def get_units(
    type: Optional[str] = None,
    active_only: bool = True,
    locale: Optional[str] = None,
    service: UnitConversionService = Depends(get_service),
):
    units = await service.converter.get_units(type, active_only)
    return [present_unit(u, locale) for u in units]


@api_router.get("/units/standard", response_model=List[UnitResponse])
async def get_standard_units(
    type: Optional[str] = None,
    locale: Optional[str] = None,
    service: UnitConversionService = Depends(get_service),
):
    units = await service.converter.get_standard_units(type)
    return [present_unit(u, locale) for u in units]


@api_router.post("/units/convert", response_model=ConvertResponse)
async def convert_units(data: ConvertPayload, service: UnitConversionService = Depends(get_service)):
    entity = None
    if data.unitable_type and data.unitable_id:
        entity = EntityRef.of(data.unitable_type, data.unitable_id)

    request = ConversionRequest(
        quantity=data.quantity,
        from_code=data.from_unit_code,
        to_code=data.to_unit_code,
        entity=entity,
    )
    try:
        with request_scope():
            result = await service.converter.resolve(request)
    except UnitConversionError as e:
        raise to_http_error(e)

    return ConvertResponse(
        quantity=data.quantity,
        from_unit_code=data.from_unit_code,
        to_unit_code=data.to_unit_code,
        result=result,
    )


@api_router.post("/units/cache/clear")
async def clear_unit_cache(service: UnitConversionService = Depends(get_service)):
    cleared = await service.converter.clear_cache()
    return {"success": True, "cleared": cleared}


@api_router.get("/units/{code}", response_model=UnitResponse)
async def get_unit(code: str, locale: Optional[str] = None, service: UnitConversionService = Depends(get_service)):
    try:
        unit = await service.converter.get_unit(code)
        return present_unit(unit, locale)
    except UnitConversionError as e:
        raise to_http_error(e)

# ==================== UNITABLE CONVERSION ROUTES ====================

@api_router.put("/unitables/{unitable_type}/{unitable_id}/conversions", response_model=ExpansionResult)
async def set_conversions(
    unitable_type: str,
    unitable_id: str,
    data: ExpandPayload,
    service: UnitConversionService = Depends(get_service),
):
    """Replace primary conversions and expand every combination"""
    entity = EntityRef.of(unitable_type, unitable_id)
    try:
        return await service.conversions.set_conversions_with_expansion(entity, data.conversions)
    except UnitConversionError as e:
        raise to_http_error(e)


@api_router.delete("/unitables/{unitable_type}/{unitable_id}/conversions", response_model=ExpansionResult)
async def clear_conversions(unitable_type: str, unitable_id: str, service: UnitConversionService = Depends(get_service)):
    entity = EntityRef.of(unitable_type, unitable_id)
    return await service.conversions.set_conversions_with_expansion(entity, [])


@api_router.get("/unitables/{unitable_type}/{unitable_id}/conversions", response_model=List[UnitConversion])
async def get_conversions(
    unitable_type: str,
    unitable_id: str,
    kind: str = Query("all", pattern="^(all|primary|derived)$"),
    service: UnitConversionService = Depends(get_service),
):
    entity = EntityRef.of(unitable_type, unitable_id)
    if kind == "primary":
        return await service.conversions.get_primary_conversions(entity)
    if kind == "derived":
        return await service.conversions.get_derived_conversions(entity)
    return await service.conversions.get_unit_conversions(entity, active_only=True)


@api_router.get("/unitables/{unitable_type}/{unitable_id}/conversion-map")
async def get_conversion_map(
    unitable_type: str,
    unitable_id: str,
    service: UnitConversionService = Depends(get_service),
) -> Dict[str, Dict[str, float]]:
    entity = EntityRef.of(unitable_type, unitable_id)
    with request_scope():
        return await service.conversions.get_conversion_map(entity)


@api_router.get("/unitables/{unitable_type}/{unitable_id}/unit-codes")
async def get_unit_codes(
    unitable_type: str,
    unitable_id: str,
    service: UnitConversionService = Depends(get_service),
) -> Dict[str, Any]:
    entity = EntityRef.of(unitable_type, unitable_id)
    return {
        "available": await service.conversions.get_available_unit_codes(entity),
        "all": await service.conversions.get_all_unit_codes(entity),
    }

app.include_router(api_router)


@app.on_event("startup")
async def startup_event():
    try:
        await get_service().ensure_indexes()
        logger.info("Unit conversion indexes created")
    except Exception as e:
        logger.warning(f"Failed to create unit conversion indexes: {e}")


@app.on_event("shutdown")
async def shutdown_db_client():
    if client is not None:
        client.close()
