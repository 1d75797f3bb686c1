"""
Maps a Stripe customer onto the one local Account allowed to change for it.
"""
from dataclasses import dataclass
from typing import Optional

from billing_sync.models.account import Account
from billing_sync.services.account_store import AccountStore


@dataclass(frozen=True)
class Resolution:
    account: Account
    provisional: bool  # Matched by email, not yet linked to the customer id


class AccountResolver:
    """
    Customer id first, email second.

    An email can belong to several profiles. Profiles already linked to a
    different Stripe customer are never candidates for an email match, since
    they are authoritative for that other customer.
    """

    def __init__(self, store: AccountStore):
        self.store = store

    def resolve(self, customer_id: Optional[str], email: Optional[str] = None) -> Optional[Resolution]:
        if customer_id:
            linked = self.store.find_by_customer_id(customer_id)
            if linked:
                return Resolution(account=linked[0], provisional=False)

        if email and email.strip():
            for account in self.store.find_by_email(email):
                if account.stripe_customer_id and account.stripe_customer_id != customer_id:
                    continue
                return Resolution(account=account, provisional=True)

        return None
