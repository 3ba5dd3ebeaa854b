from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from finledger.db.audit import log_change
from finledger.db.models import Account, AccountProvider, Holding, ProviderAccount


log = logging.getLogger(__name__)


class LinkError(Exception):
    pass


def link_provider_account(
    session: Session,
    *,
    provider_account: ProviderAccount,
    account: Account,
    actor: str = "user",
) -> AccountProvider:
    if provider_account.account_provider is not None:
        raise LinkError(
            f"Provider account {provider_account.provider_account_id} is already linked to account "
            f"{provider_account.account_provider.account_id}."
        )
    if provider_account.connection.family_id != account.family_id:
        raise LinkError("Provider account and account belong to different families.")
    link = AccountProvider(account=account, provider_account=provider_account)
    session.add(link)
    session.flush()
    log_change(
        session,
        actor=actor,
        action="LINK",
        target=link,
        new={"account_id": account.id, "provider_account_id": provider_account.id},
        note=f"Linked {provider_account.name} to {account.name}",
    )
    return link


def unlink_provider_account(session: Session, *, provider_account: ProviderAccount, actor: str = "user") -> int:
    """
    Detach a provider account from its ledger account.

    Holdings it reported stay in the ledger but lose their provider reference. Returns
    the number of holdings detached.
    """
    link = provider_account.account_provider
    if link is None:
        return 0
    detached = (
        session.query(Holding)
        .filter(Holding.account_provider_id == link.id)
        .update({Holding.account_provider_id: None}, synchronize_session="fetch")
    )
    log_change(
        session,
        actor=actor,
        action="UNLINK",
        target=link,
        old={"account_id": link.account_id, "provider_account_id": provider_account.id},
        new={"holdings_detached": int(detached)},
        note=f"Unlinked {provider_account.name}",
    )
    account = link.account
    session.delete(link)
    session.flush()
    session.expire(provider_account, ["account_provider"])
    session.expire(account, ["account_providers"])
    log.info("Unlinked provider account %s; detached %s holdings", provider_account.id, detached)
    return int(detached)
