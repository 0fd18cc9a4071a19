"""Resolve the authenticated token subject to a local actor."""

import uuid
from typing import Annotated

from fastapi import Depends
from libs.auth.dependencies import get_current_user
from libs.auth.models import Actor, AuthUser
from libs.common.backends import get_cache
from libs.common.cache import Cache
from libs.common.errors import PermissionDeniedError
from libs.common.logging import set_actor
from libs.db.session import get_async_db
from services.identity_service.models import UserRole
from services.identity_service.services.identity_sync import (
    get_user_by_external_id,
    get_vendor_for_user,
)
from sqlalchemy.ext.asyncio import AsyncSession


def _actor_from_session(auth_user: AuthUser, projection: dict) -> Actor:
    vendor_id = projection.get("vendor_id")
    return Actor(
        user_id=uuid.UUID(projection["user_id"]),
        external_id=auth_user.user_id,
        role=projection["role"],
        email=projection.get("email"),
        vendor_id=uuid.UUID(vendor_id) if vendor_id else None,
    )


async def get_current_actor(
    auth_user: Annotated[AuthUser, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_async_db)],
    cache: Annotated[Cache, Depends(get_cache)],
) -> Actor:
    """
    Map the bearer token to the mirrored local user.

    A cached session projection (written when the provider reports the
    session) short-circuits the database lookup.
    """
    if auth_user.session_id:
        projection = await cache.get_session(auth_user.session_id)
        if projection and projection.get("external_id") == auth_user.user_id:
            actor = _actor_from_session(auth_user, projection)
            set_actor(str(actor.user_id))
            return actor

    user = await get_user_by_external_id(db, auth_user.user_id)
    if user is None:
        raise PermissionDeniedError("Account is not provisioned yet")
    if not user.is_active:
        raise PermissionDeniedError("Account is deactivated")

    vendor_id = None
    if user.role == UserRole.VENDOR:
        vendor = await get_vendor_for_user(db, user.id)
        vendor_id = vendor.id if vendor else None

    set_actor(str(user.id))
    return Actor(
        user_id=user.id,
        external_id=user.external_id,
        role=user.role.value,
        email=user.email,
        vendor_id=vendor_id,
    )


async def require_admin(
    actor: Annotated[Actor, Depends(get_current_actor)]
) -> Actor:
    if not actor.is_admin:
        raise PermissionDeniedError("Admin privileges required")
    return actor


async def require_vendor(
    actor: Annotated[Actor, Depends(get_current_actor)]
) -> Actor:
    if actor.vendor_id is None:
        raise PermissionDeniedError("Vendor account required")
    return actor
