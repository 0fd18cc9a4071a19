"""FastAPI wiring for the store's workflow objects."""

from typing import Optional

from fastapi import Depends
from libs.common.backends import get_cache, get_notifier
from libs.common.cache import Cache
from libs.common.notifications import NotificationDispatcher
from libs.db.session import get_async_db, get_session_factory
from services.payments_service.gateway import PaymentGateway, get_payment_gateway
from services.store_service.services.inventory_ledger import InventoryLedger
from services.store_service.services.order_workflow import OrderWorkflow
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


def get_ledger(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> InventoryLedger:
    return InventoryLedger(session_factory)


def get_order_workflow(
    db: AsyncSession = Depends(get_async_db),
    ledger: InventoryLedger = Depends(get_ledger),
    gateway: Optional[PaymentGateway] = Depends(get_payment_gateway),
    cache: Cache = Depends(get_cache),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> OrderWorkflow:
    return OrderWorkflow(db, ledger, gateway, cache, notifier)
