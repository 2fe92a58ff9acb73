"""
Route dependencies: the service container and the calling account.

Authentication is delegated to the gateway in front of the API, which
forwards the authenticated account id in ``X-Account-Id``.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from biteclub.models import Account, AccountRole, Restaurant
from biteclub.services import ServiceContainer


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


async def current_account(
    x_account_id: Optional[str] = Header(None, alias="X-Account-Id"),
    services: ServiceContainer = Depends(get_services),
) -> Account:
    if not x_account_id:
        raise HTTPException(status_code=401, detail="Authentication required")

    async with services.database.session() as session:
        account = await session.get(Account, x_account_id)
    if account is None:
        raise HTTPException(status_code=401, detail="Unknown account")
    return account


def require_role(*roles: AccountRole):
    """Dependency admitting only accounts with one of ``roles``."""

    async def dependency(account: Account = Depends(current_account)) -> Account:
        if account.role not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return account

    return dependency


async def current_restaurant(
    account: Account = Depends(require_role(AccountRole.RESTAURANT)),
    services: ServiceContainer = Depends(get_services),
) -> Restaurant:
    """The restaurant owned by the calling account."""
    return await services.orders.restaurant_for_owner(account.id)
