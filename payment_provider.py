import logging
from typing import Any, Dict, Optional

import stripe

from errors import ProviderError
from settings import get_settings

logger = logging.getLogger(__name__)


class StripePaymentProvider:
    """
    thin wrapper over the Stripe SDK for connect transfers and onboarding.
    stripe errors are re-raised as ProviderError with the stripe exception attached.
    """

    def __init__(self, api_key: str, refresh_url: str = "", return_url: str = ""):
        self.api_key = api_key
        self.refresh_url = refresh_url
        self.return_url = return_url

    def transfer(
        self,
        amount_minor_units: int,
        currency: str,
        destination: str,
        metadata: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        params = {
            "amount": amount_minor_units,
            "currency": currency,
            "destination": destination,
            "metadata": {k: str(v) for k, v in (metadata or {}).items()},
        }
        if description:
            params["description"] = description
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        try:
            transfer = stripe.Transfer.create(api_key=self.api_key, **params)
        except stripe.StripeError as e:
            logger.error("stripe transfer to %s failed: %s", destination, e)
            raise ProviderError(str(e), cause=e) from e

        return {"id": transfer.id, "status": "succeeded"}

    def create_connect_account(
        self,
        email: str,
        first_name: str = "",
        last_name: str = "",
        country: str = "CA",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            account = stripe.Account.create(
                api_key=self.api_key,
                type="express",
                country=country,
                email=email,
                capabilities={"transfers": {"requested": True}},
                business_type="individual",
                individual={"first_name": first_name, "last_name": last_name, "email": email},
                metadata={k: str(v) for k, v in (metadata or {}).items()},
            )
            link = stripe.AccountLink.create(
                api_key=self.api_key,
                account=account.id,
                refresh_url=self.refresh_url,
                return_url=self.return_url,
                type="account_onboarding",
            )
        except stripe.StripeError as e:
            logger.error("stripe connect account creation failed: %s", e)
            raise ProviderError(str(e), cause=e) from e

        return {"account_id": account.id, "onboarding_url": link.url}


def get_payment_provider() -> StripePaymentProvider:
    settings = get_settings()
    return StripePaymentProvider(
        settings.stripe_secret_key,
        refresh_url=settings.connect_refresh_url,
        return_url=settings.connect_return_url,
    )
