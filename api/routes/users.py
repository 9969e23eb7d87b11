"""
Protected routes. The authentication stage has already rejected requests
without a valid bearer token by the time these run.
"""

from fastapi import APIRouter

from core.dependencies import CurrentUser
from models.schemas import UserResponse

router = APIRouter(prefix="/users", tags=["users"])


@router.head("", include_in_schema=False)
@router.get("", response_model=UserResponse)
async def list_users(user: CurrentUser) -> UserResponse:
    return UserResponse(subject=user["sub"], claims=user)


@router.head("/me", include_in_schema=False)
@router.get("/me", response_model=UserResponse)
async def current_user(user: CurrentUser) -> UserResponse:
    return UserResponse(subject=user["sub"], claims=user)
