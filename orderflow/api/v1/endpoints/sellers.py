from fastapi import APIRouter

from orderflow.api.deps import PayoutDirectory, SellerActor
from orderflow.core.exceptions import NotFoundError
from orderflow.schemas.payout import PayoutAccountResponse, PayoutAccountUpsert


router = APIRouter(tags=["Sellers"])


@router.get("/me/payout-account", response_model=PayoutAccountResponse)
async def get_payout_account(
    actor: SellerActor,
    directory: PayoutDirectory,
):
    """The caller's payout destination."""
    account = await directory.get_account(actor.id)
    if account is None:
        raise NotFoundError("Payout account not configured", details={"seller_id": actor.id})
    return PayoutAccountResponse.model_validate(account)


@router.put("/me/payout-account", response_model=PayoutAccountResponse)
async def set_payout_account(
    data: PayoutAccountUpsert,
    actor: SellerActor,
    directory: PayoutDirectory,
):
    """
    Create or replace the caller's payout destination.

    Sub-orders flagged for a missing account can be settled again afterwards.
    """
    account = await directory.upsert_account(
        actor.id,
        data.payment_method.value,
        data.details,
        is_active=data.is_active,
    )
    return PayoutAccountResponse.model_validate(account)
