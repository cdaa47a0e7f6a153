import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel, Field
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.src.api.database import get_db
from backend.src.config import settings
from backend.src.contracts.errors import DataIntegrityError
from backend.src.contracts.models import (
    CycleStatus,
    FilterRead,
    FilterSchema,
    SubscriptionSchema,
    User,
    UserRead,
)
from backend.src.filters.repository import FilterRepository
from backend.src.matcher.matcher import validate_item_name
from backend.src.scheduler.coordinator import CycleCoordinator
from backend.src.subscriptions.repository import SubscriptionRepository
from backend.src.users.repository import UserRepository, is_valid_user_code

logger = structlog.get_logger(__name__)

limiter = Limiter(key_func=get_remote_address)

router = APIRouter()

TRIGGER_STATUS_CODES: dict[CycleStatus, int] = {
    CycleStatus.OK: status.HTTP_200_OK,
    CycleStatus.TOO_EARLY: status.HTTP_425_TOO_EARLY,
    CycleStatus.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    CycleStatus.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


# ── Request / Response schemas ────────────────────────────────────────────────


class NewUserResponse(BaseModel):
    usercode: str


class NicknameUpdate(BaseModel):
    nickname: str = Field(min_length=1, max_length=60)


class SubscriptionResponse(BaseModel):
    endpoint: str


class HealthResponse(BaseModel):
    status: str
    db: str


# ── Dependencies ──────────────────────────────────────────────────────────────


def get_coordinator(request: Request) -> CycleCoordinator:
    coordinator: CycleCoordinator | None = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Coordinator is not configured",
        )
    return coordinator


async def get_user(
    user_code: str,
    session: AsyncSession = Depends(get_db),
) -> User:
    if not is_valid_user_code(user_code):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"'{user_code}' is not a valid user code",
        )
    user = await UserRepository(session).get_by_code(user_code)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Could not find user with code '{user_code}'",
        )
    return user


# ── Check and notify ──────────────────────────────────────────────────────────


@router.api_route("/api/check-and-notify", methods=["GET", "POST"])
async def check_and_notify(
    request: Request,
    coordinator: CycleCoordinator = Depends(get_coordinator),
) -> Response:
    cycle_status = await coordinator.run(request.headers.get("authorization"))
    return Response(status_code=TRIGGER_STATUS_CODES[cycle_status])


# ── Users ─────────────────────────────────────────────────────────────────────


@router.post("/api/new-user", status_code=status.HTTP_200_OK)
@limiter.limit("5/minute")
async def new_user(
    request: Request,
    session: AsyncSession = Depends(get_db),
) -> NewUserResponse:
    user = await UserRepository(session).create()
    logger.info("user_created", user_id=user.id)
    return NewUserResponse(usercode=user.user_code)


@router.get("/api/users/{user_code}")
async def get_user_data(user: User = Depends(get_user)) -> UserRead:
    return user.to_read()


@router.put("/api/users/{user_code}/nickname")
async def update_nickname(
    body: NicknameUpdate,
    session: AsyncSession = Depends(get_db),
    user: User = Depends(get_user),
) -> UserRead:
    try:
        validate_item_name(body.nickname)
    except DataIntegrityError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Nickname contains special characters",
        ) from exc
    updated = await UserRepository(session).update_nickname(user.id, body.nickname.strip())
    return updated.to_read()


# ── Filters ───────────────────────────────────────────────────────────────────


@router.get("/api/users/{user_code}/filters")
async def list_filters(
    session: AsyncSession = Depends(get_db),
    user: User = Depends(get_user),
) -> list[FilterRead]:
    rows = await FilterRepository(session).list_for_user(user.id)
    return [FilterRead(id=row.id, filter=row.to_schema()) for row in rows]


@router.post("/api/users/{user_code}/filters", status_code=status.HTTP_201_CREATED)
async def add_filter(
    body: FilterSchema,
    session: AsyncSession = Depends(get_db),
    user: User = Depends(get_user),
) -> FilterRead:
    try:
        validate_item_name(body.name)
    except DataIntegrityError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    repo = FilterRepository(session)
    row = await repo.get_or_create(body)
    await repo.add_to_user(user.id, row.id)
    logger.info("filter_added", user_id=user.id, filter_id=row.id)
    return FilterRead(id=row.id, filter=row.to_schema())


@router.delete(
    "/api/users/{user_code}/filters/{filter_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def remove_filter(
    filter_id: int,
    session: AsyncSession = Depends(get_db),
    user: User = Depends(get_user),
) -> Response:
    removed = await FilterRepository(session).remove_from_user(user.id, filter_id)
    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"User has no filter {filter_id}",
        )
    logger.info("filter_removed", user_id=user.id, filter_id=filter_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── Device subscriptions ──────────────────────────────────────────────────────


@router.post("/api/users/{user_code}/subscriptions", status_code=status.HTTP_201_CREATED)
async def subscribe(
    body: SubscriptionSchema,
    session: AsyncSession = Depends(get_db),
    user: User = Depends(get_user),
) -> SubscriptionResponse:
    repo = SubscriptionRepository(session)
    existing = await repo.get(user.id, body.endpoint)
    if existing is None and (
        await repo.count_for_user(user.id) >= settings.max_subscriptions_per_user
    ):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"A user may register at most {settings.max_subscriptions_per_user} devices",
        )

    row = await repo.upsert(user.id, body)
    logger.info("subscription_registered", user_id=user.id, updated=existing is not None)
    return SubscriptionResponse(endpoint=row.endpoint)


@router.post("/api/users/{user_code}/unsubscribe", status_code=status.HTTP_204_NO_CONTENT)
async def unsubscribe(
    body: SubscriptionSchema,
    session: AsyncSession = Depends(get_db),
    user: User = Depends(get_user),
) -> Response:
    await SubscriptionRepository(session).remove_for_user(user.id, body.endpoint)
    logger.info("subscription_revoked", user_id=user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── Health ────────────────────────────────────────────────────────────────────


@router.get("/health")
async def health_check(
    session: AsyncSession = Depends(get_db),
) -> HealthResponse:
    db_status = "ok"
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        db_status = "error"

    return HealthResponse(
        status="ok" if db_status == "ok" else "degraded",
        db=db_status,
    )
