"""Shared FastAPI dependencies: authentication and per-process collaborators."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.database import get_db
from imagegen.errors import AuthenticationError
from imagegen.models import UserProfile
from imagegen.services.auth_service import is_admin_token, verify_access_token
from imagegen.services.payment_service import StripeGateway
from imagegen.services.task_lifecycle import PollReconciler, TaskLifecycle
from imagegen.services.task_store import TaskMetadataStore
from imagegen.services.task_submitter import TaskSubmitter

_bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class Principal:
    """Caller of an endpoint that accepts either a user or the admin token."""

    user: UserProfile | None = None
    is_admin: bool = False


async def _load_profile(db: AsyncSession, user_id: UUID) -> UserProfile:
    result = await db.execute(
        select(UserProfile)
        .where(UserProfile.id == user_id)
        .execution_options(populate_existing=True)
    )
    profile = result.scalar_one_or_none()
    if profile is None:
        raise AuthenticationError("User profile not found")
    return profile


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> UserProfile:
    """Validate the bearer token and return the caller's profile.

    Raises AuthenticationError (401) when the token is missing or invalid,
    or names a user without a profile.
    """
    if credentials is None:
        raise AuthenticationError("Authentication required")
    user_id = verify_access_token(credentials.credentials)
    request.state.user_id = str(user_id)
    return await _load_profile(db, user_id)


async def get_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> Principal:
    """Accept the admin API token or a user bearer token."""
    if credentials is None:
        raise AuthenticationError("Authentication required")
    if is_admin_token(credentials.credentials):
        return Principal(is_admin=True)
    user_id = verify_access_token(credentials.credentials)
    request.state.user_id = str(user_id)
    return Principal(user=await _load_profile(db, user_id))


# ---------------------------------------------------------------------------
# Collaborators built in the lifespan and stored on app.state
# ---------------------------------------------------------------------------

def get_task_store(request: Request) -> TaskMetadataStore:
    return request.app.state.task_store


def get_task_lifecycle(request: Request) -> TaskLifecycle:
    return request.app.state.task_lifecycle


def get_poll_reconciler(request: Request) -> PollReconciler:
    return request.app.state.poll_reconciler


def get_task_submitter(request: Request) -> TaskSubmitter:
    return request.app.state.task_submitter


def get_payment_gateway(request: Request) -> StripeGateway:
    return request.app.state.payment_gateway
