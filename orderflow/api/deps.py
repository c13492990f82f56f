from typing import Annotated
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow.core.permissions import Actor, ActorRole
from orderflow.core.security import verify_access_token
from orderflow.database import async_session_factory
from orderflow.services.ledger_store import LedgerStore
from orderflow.services.order_query_service import OrderQueryService
from orderflow.services.order_service import OrderService
from orderflow.services.payment_verification_service import PaymentVerificationService
from orderflow.services.settlement_service import DatabasePayoutDirectory, SettlementService


logger = logging.getLogger(__name__)

# HTTP Bearer security scheme
security = HTTPBearer()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory used by every service. Overridden in tests."""
    return async_session_factory


SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> Actor:
    """
    Dependency to get the caller identity.

    Tokens are issued by the external auth service and carry the user ID in
    ``sub`` and one of buyer/seller/admin/system in ``role``.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = verify_access_token(credentials.credentials)
    if payload is None:
        logger.warning("Token verification failed - invalid or expired token")
        raise credentials_exception

    try:
        role = ActorRole(payload["role"])
    except ValueError:
        logger.warning(f"Unknown role in token: {payload['role']}")
        raise credentials_exception

    return Actor(id=str(payload["sub"]), role=role)


CurrentActor = Annotated[Actor, Depends(get_current_actor)]


def require_roles(*roles: ActorRole):
    """
    Dependency factory to require one of the given roles.

    Usage:
        @router.get("/queue", dependencies=[Depends(require_roles(ActorRole.ADMIN))])
        async def queue():
            ...
    """
    async def role_checker(actor: CurrentActor) -> Actor:
        if actor.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{actor.role.value}' is not allowed to perform this action",
            )
        return actor

    return role_checker


SellerActor = Annotated[Actor, Depends(require_roles(ActorRole.SELLER))]


# ==================== SERVICES ====================

def get_ledger_store(session_factory: SessionFactory) -> LedgerStore:
    return LedgerStore(session_factory)


Store = Annotated[LedgerStore, Depends(get_ledger_store)]


def get_order_service(store: Store) -> OrderService:
    return OrderService(store)


def get_payment_service(store: Store) -> PaymentVerificationService:
    return PaymentVerificationService(store)


def get_payout_directory(session_factory: SessionFactory) -> DatabasePayoutDirectory:
    return DatabasePayoutDirectory(session_factory)


def get_settlement_service(
    store: Store,
    directory: Annotated[DatabasePayoutDirectory, Depends(get_payout_directory)],
) -> SettlementService:
    return SettlementService(store, directory)


def get_query_service(session_factory: SessionFactory, store: Store) -> OrderQueryService:
    return OrderQueryService(session_factory, store)


Orders = Annotated[OrderService, Depends(get_order_service)]
Payments = Annotated[PaymentVerificationService, Depends(get_payment_service)]
Settlement = Annotated[SettlementService, Depends(get_settlement_service)]
PayoutDirectory = Annotated[DatabasePayoutDirectory, Depends(get_payout_directory)]
Queries = Annotated[OrderQueryService, Depends(get_query_service)]
