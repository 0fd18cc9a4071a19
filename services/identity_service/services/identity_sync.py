"""Mirror identity-provider events into local users and the session cache.

Every handler is an upsert keyed by the provider's user id, so replaying an
event converges on the same state. Database changes are left uncommitted;
the caller commits them together with the delivery ledger row and only then
runs the returned post-commit effects (cache, notifications).
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional

from libs.common.cache import Cache
from libs.common.datetime_utils import from_unix, utc_now
from libs.common.logging import get_logger
from libs.common.notifications import NotificationDispatcher
from services.identity_service.models import (
    CustomerProfile,
    User,
    UserRole,
    Vendor,
    WebhookProvider,
)
from services.identity_service.services.webhook_ledger import (
    already_processed,
    commit_processed,
)
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

Effect = Callable[[], Awaitable[object]]

SESSION_END_EVENTS = {"session.ended", "session.removed", "session.revoked"}


@dataclass
class SyncOutcome:
    status: str  # processed | ignored | duplicate
    user: Optional[User] = None
    effects: list[Effect] = field(default_factory=list)


def determine_role(data: dict) -> UserRole:
    """Role from public metadata; anything unrecognised is a customer."""
    metadata = data.get("public_metadata") or {}
    raw = str(metadata.get("role") or "").upper()
    if raw == "VENDOR":
        return UserRole.VENDOR
    if raw == "ADMIN":
        return UserRole.ADMIN
    return UserRole.CUSTOMER


def from_unix_ms(value) -> Optional[datetime]:
    """Provider timestamps are unix milliseconds."""
    if value is None:
        return None
    return from_unix(int(value) // 1000)


def primary_email(data: dict) -> Optional[str]:
    addresses = data.get("email_addresses") or []
    primary_id = data.get("primary_email_address_id")
    for address in addresses:
        if address.get("id") == primary_id:
            return address.get("email_address")
    if addresses:
        return addresses[0].get("email_address")
    return None


async def get_user_by_external_id(db: AsyncSession, external_id: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.external_id == external_id))
    return result.scalar_one_or_none()


async def get_vendor_for_user(db: AsyncSession, user_id) -> Optional[Vendor]:
    result = await db.execute(select(Vendor).where(Vendor.user_id == user_id))
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# User lifecycle
# ---------------------------------------------------------------------------


async def upsert_user(db: AsyncSession, data: dict) -> tuple[User, bool]:
    """Create or refresh the local mirror of a provider user.

    Returns (user, created). CUSTOMER users also get a customer profile.
    """
    external_id = data["id"]
    user = await get_user_by_external_id(db, external_id)
    created = user is None
    if created:
        user = User(external_id=external_id)
        db.add(user)

    user.email = primary_email(data)
    user.first_name = data.get("first_name")
    user.last_name = data.get("last_name")
    user.avatar_url = data.get("image_url") or data.get("profile_image_url")
    user.role = determine_role(data)
    user.is_active = True
    await db.flush()

    if user.role == UserRole.CUSTOMER:
        profile = (
            await db.execute(
                select(CustomerProfile).where(CustomerProfile.user_id == user.id)
            )
        ).scalar_one_or_none()
        if profile is None:
            db.add(CustomerProfile(user_id=user.id))

    return user, created


async def deactivate_user(db: AsyncSession, external_id: str) -> Optional[User]:
    """Soft-delete: the row and its order history stay."""
    user = await get_user_by_external_id(db, external_id)
    if user is None:
        return None
    user.is_active = False
    return user


async def touch_login(db: AsyncSession, external_id: str, at=None) -> Optional[User]:
    user = await get_user_by_external_id(db, external_id)
    if user is None:
        return None
    user.last_login_at = at or utc_now()
    return user


async def session_projection(db: AsyncSession, user: User) -> dict:
    vendor = await get_vendor_for_user(db, user.id)
    return {
        "user_id": str(user.id),
        "external_id": user.external_id,
        "email": user.email,
        "role": user.role.value,
        "vendor_id": str(vendor.id) if vendor else None,
    }


# ---------------------------------------------------------------------------
# Event dispatch
# ---------------------------------------------------------------------------


async def _apply_event(
    db: AsyncSession,
    cache: Cache,
    notifier: NotificationDispatcher,
    event_type: str,
    data: dict,
) -> SyncOutcome:
    if event_type in ("user.created", "user.updated") and not data.get("id"):
        logger.warning("Identity %s event carries no user id", event_type)
        return SyncOutcome("ignored")

    if event_type == "user.created":
        user, created = await upsert_user(db, data)
        effects = [lambda: cache.invalidate_user(user.id)]
        if created:
            effects.append(
                lambda: notifier.email(
                    "welcome", user.email, {"first_name": user.first_name or ""}
                )
            )
            effects.append(
                lambda: notifier.analytics(
                    "user_registered", {"user_id": str(user.id), "role": user.role.value}
                )
            )
        return SyncOutcome("processed", user, effects)

    if event_type == "user.updated":
        user, _ = await upsert_user(db, data)
        return SyncOutcome("processed", user, [lambda: cache.invalidate_user(user.id)])

    if event_type == "user.deleted":
        user = await deactivate_user(db, data.get("id", ""))
        if user is None:
            return SyncOutcome("ignored")
        return SyncOutcome("processed", user, [lambda: cache.invalidate_user(user.id)])

    if event_type == "session.created":
        session_id = data.get("id")
        user = await touch_login(
            db, data.get("user_id", ""), from_unix_ms(data.get("created_at"))
        )
        if user is None or not session_id:
            return SyncOutcome("ignored")
        projection = await session_projection(db, user)
        return SyncOutcome(
            "processed", user, [lambda: cache.set_session(session_id, projection)]
        )

    if event_type in SESSION_END_EVENTS:
        session_id = data.get("id")
        if not session_id:
            return SyncOutcome("ignored")
        return SyncOutcome("processed", None, [lambda: cache.remove_session(session_id)])

    return SyncOutcome("ignored")


async def handle_identity_event(
    db: AsyncSession,
    cache: Cache,
    notifier: NotificationDispatcher,
    event_id: str,
    event: dict,
) -> SyncOutcome:
    """Apply one verified identity-provider delivery exactly once."""
    event_type = event.get("type", "")
    if await already_processed(db, WebhookProvider.IDENTITY, event_id):
        logger.info("Identity event %s (%s) already processed", event_id, event_type)
        return SyncOutcome("duplicate")

    outcome = await _apply_event(db, cache, notifier, event_type, event.get("data") or {})
    if not await commit_processed(db, WebhookProvider.IDENTITY, event_id, event_type):
        return SyncOutcome("duplicate")

    for effect in outcome.effects:
        await effect()

    if outcome.status == "ignored":
        logger.info("Ignored identity event %s (%s)", event_id, event_type)
    else:
        logger.info("Processed identity event %s (%s)", event_id, event_type)
    return outcome
