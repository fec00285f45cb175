import uuid

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from backend.src.api.database import get_db
from backend.src.contracts.models import (
    DeviceRegistrationCreate,
    DeviceRegistrationRead,
    ProductAddRequest,
    ProductDetailsRead,
    ProductInfo,
    ProductUrlRequest,
    RecommendedProductRead,
    TargetPriceUpdate,
    TrackingProductRead,
)
from backend.src.fetcher.fetcher import FetchError, InvalidProductUrlError
from backend.src.products.service import (
    ProductAlreadyTrackedError,
    ProductNotFoundError,
    ProductService,
)
from backend.src.users.repository import UserRepository

limiter = Limiter(key_func=get_remote_address)

router = APIRouter()


# ── Dependencies ──────────────────────────────────────────────────────────────


class HealthResponse(BaseModel):
    status: str
    db: str
    cached_products: int


def get_product_service(request: Request) -> ProductService:
    return request.app.state.product_service


async def get_current_user_id(x_user_id: str = Header(...)) -> uuid.UUID:
    """User id forwarded by the upstream authentication layer."""
    try:
        return uuid.UUID(x_user_id)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user id",
        ) from exc


# ── Product routes ────────────────────────────────────────────────────────────


@router.post("/api/products/verify")
@limiter.limit("30/minute")
async def verify_product_url(
    request: Request,
    body: ProductUrlRequest,
    service: ProductService = Depends(get_product_service),
) -> ProductInfo:
    try:
        return await service.verify_url(body.product_url)
    except (InvalidProductUrlError, FetchError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid product URL",
        ) from exc


@router.post("/api/products", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def add_product(
    request: Request,
    body: ProductAddRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: ProductService = Depends(get_product_service),
) -> JSONResponse:
    try:
        await service.add_product(user_id, body.product_code, body.target_price)
    except ProductAlreadyTrackedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except FetchError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Product could not be fetched",
        ) from exc
    return JSONResponse(
        content={"message": "Product added"},
        status_code=status.HTTP_201_CREATED,
    )


@router.get("/api/products/tracking")
async def get_tracking_list(
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: ProductService = Depends(get_product_service),
) -> list[TrackingProductRead]:
    return await service.get_tracking_list(user_id)


@router.get("/api/products/recommend")
async def get_recommend_list(
    service: ProductService = Depends(get_product_service),
) -> list[RecommendedProductRead]:
    return await service.get_recommend_list()


@router.get("/api/products/{product_code}")
async def get_product_details(
    product_code: str,
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: ProductService = Depends(get_product_service),
) -> ProductDetailsRead:
    try:
        return await service.get_product_details(user_id, product_code)
    except ProductNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.patch("/api/products/{product_code}")
async def update_target_price(
    product_code: str,
    body: TargetPriceUpdate,
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: ProductService = Depends(get_product_service),
) -> JSONResponse:
    try:
        await service.update_target_price(user_id, product_code, body.target_price)
    except ProductNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return JSONResponse(content={"message": "Target price updated"})


@router.delete("/api/products/{product_code}")
async def remove_tracking(
    product_code: str,
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: ProductService = Depends(get_product_service),
) -> JSONResponse:
    try:
        await service.remove_tracking(user_id, product_code)
    except ProductNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return JSONResponse(content={"message": "Tracking removed"})


# ── Device registration ──────────────────────────────────────────────────────


@router.post("/api/devices", status_code=status.HTTP_201_CREATED)
async def register_device(
    body: DeviceRegistrationCreate,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
) -> DeviceRegistrationRead:
    user_repo = UserRepository(session)
    if await user_repo.get_by_id(user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    device = await user_repo.register_device(user_id, body.device_token, body.platform)
    return DeviceRegistrationRead(
        user_id=device.user_id,
        device_token=device.device_token,
        platform=body.platform,
    )


# ── Health ────────────────────────────────────────────────────────────────────


@router.get("/health")
async def health_check(
    request: Request,
    session: AsyncSession = Depends(get_db),
) -> HealthResponse:
    db_status = "ok"
    try:
        await session.execute(text("SELECT 1"))
    except Exception:
        db_status = "error"

    cache = getattr(request.app.state, "price_cache", None)
    return HealthResponse(
        status="ok" if db_status == "ok" else "degraded",
        db=db_status,
        cached_products=len(cache) if cache is not None else 0,
    )
