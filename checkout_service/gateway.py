"""
gateway.py — Gateway Confirmation Adapter

Wraps the payment gateway's client-side handshake (collect card details,
confirm the payment intent) behind a small async contract. This is the only
module that talks to the gateway SDK (Stripe).

Field-level validation of the card form is reported through a side channel
(a validation callback) as fields change, independent of the confirmation
itself, so the front end can keep the pay button disabled until the card
details are valid.
"""

import abc
import asyncio
import logging
import os
from datetime import date
from typing import Callable, List, Optional

import stripe

from . import errors
from .models import BillingDetails, ConfirmationOutcome, ConfirmationResult

STRIPE_PUBLISHABLE_KEY = os.environ.get("STRIPE_PUBLISHABLE_KEY", "")

log = logging.getLogger(__name__)

ValidationCallback = Callable[[Optional[str]], None]


def luhn_valid(number: str) -> bool:
    total = 0
    for index, char in enumerate(reversed(number)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


class CardForm:
    """
    Card fields as entered at the terminal, validated field by field.

    Every update re-validates the form and publishes the first error message
    (or None once everything is valid) to the registered listeners.
    """
    def __init__(self, today: Optional[date] = None):
        self.number = ""
        self.exp_month: Optional[int] = None
        self.exp_year: Optional[int] = None
        self.cvc = ""
        self._today = today
        self._listeners: List[ValidationCallback] = []
        self.error: Optional[str] = "Your card number is incomplete."

    def on_change(self, callback: ValidationCallback):
        self._listeners.append(callback)

    def update(self, number: Optional[str] = None, exp_month: Optional[int] = None,
               exp_year: Optional[int] = None, cvc: Optional[str] = None) -> Optional[str]:
        """
        Updates the given fields and returns the resulting validation error, if any.
        """
        if number is not None:
            self.number = "".join(number.split())
        if exp_month is not None:
            self.exp_month = exp_month
        if exp_year is not None:
            self.exp_year = exp_year
        if cvc is not None:
            self.cvc = cvc.strip()

        self.error = self.validate()
        for listener in self._listeners:
            listener(self.error)
        return self.error

    def validate(self) -> Optional[str]:
        if not self.number.isdigit() or len(self.number) < 12:
            if self.number and not self.number.isdigit():
                return "Your card number is invalid."
            return "Your card number is incomplete."
        if len(self.number) > 19 or not luhn_valid(self.number):
            return "Your card number is invalid."

        if self.exp_month is None or self.exp_year is None:
            return "Your card's expiration date is incomplete."
        if not 1 <= self.exp_month <= 12:
            return "Your card's expiration date is invalid."
        today = self._today or date.today()
        year = self.exp_year + 2000 if self.exp_year < 100 else self.exp_year
        if (year, self.exp_month) < (today.year, today.month):
            return "Your card's expiration date is in the past."

        if not self.cvc.isdigit() or len(self.cvc) not in (3, 4):
            return "Your card's security code is incomplete."
        return None

    @property
    def is_complete(self) -> bool:
        return self.error is None


class GatewayConfirmationAdapter(abc.ABC):
    """
    Minimal contract between the checkout core and the gateway's client side.

    Implementations report card validation problems through
    ``on_validation_change`` and resolve ``confirm_payment`` with one of
    SUCCEEDED, FAILED or USER_CANCELLED.
    """
    def __init__(self):
        self._validation_listeners: List[ValidationCallback] = []
        self.validation_error: Optional[str] = None

    def on_validation_change(self, callback: ValidationCallback):
        self._validation_listeners.append(callback)

    def _publish_validation(self, error: Optional[str]):
        self.validation_error = error
        for listener in self._validation_listeners:
            listener(error)

    async def load(self) -> None:
        """
        Loads the gateway library on demand. Must be idempotent.
        Raises:
            errors.GatewayUnavailable: If the library cannot be loaded.
        """

    @abc.abstractmethod
    async def confirm_payment(self, client_secret: str, billing_details: BillingDetails) -> ConfirmationResult:
        """Confirms the intent identified by ``client_secret`` with the collected payment details."""


def intent_id_from_secret(client_secret: str) -> str:
    """Stripe client secrets have the form ``<intent id>_secret_<random>``."""
    intent_id, sep, _ = client_secret.partition("_secret_")
    if not sep or not intent_id:
        raise errors.ValidationError("Malformed payment client secret")
    return intent_id


class StripeConfirmationAdapter(GatewayConfirmationAdapter):
    """
    Confirmation adapter backed by the Stripe SDK, authenticated with the
    terminal's publishable key. Card details come from a CardForm.
    """
    def __init__(self, publishable_key: str = STRIPE_PUBLISHABLE_KEY, card_form: Optional[CardForm] = None):
        super().__init__()
        self.publishable_key = publishable_key
        self.card_form = card_form or CardForm()
        self.card_form.on_change(self._publish_validation)
        self.validation_error = self.card_form.error
        self._loaded = False

    async def load(self) -> None:
        if self._loaded:
            return
        if not self.publishable_key:
            log.error("Stripe publishable key is not configured.")
            raise errors.GatewayUnavailable("Unable to load the payment gateway")
        self._loaded = True
        log.info("Stripe gateway loaded.")

    def update_card(self, **fields) -> Optional[str]:
        return self.card_form.update(**fields)

    def _confirm(self, client_secret: str, billing_details: BillingDetails):
        form = self.card_form
        payment_method = stripe.PaymentMethod.create(
            type="card",
            card={
                "number": form.number,
                "exp_month": form.exp_month,
                "exp_year": form.exp_year,
                "cvc": form.cvc,
            },
            billing_details={"name": billing_details.name, "phone": billing_details.phone},
            api_key=self.publishable_key,
        )
        intent = stripe.PaymentIntent.confirm(
            intent_id_from_secret(client_secret),
            payment_method=payment_method.id,
            client_secret=client_secret,
            api_key=self.publishable_key,
        )
        return payment_method, intent

    async def confirm_payment(self, client_secret: str, billing_details: BillingDetails) -> ConfirmationResult:
        """
        Creates a card payment method and confirms the intent with it.
        Returns:
            ConfirmationResult: SUCCEEDED for 'succeeded' or 'processing' intents (the backend
            verification decides), USER_CANCELLED for canceled intents, FAILED otherwise.
        Raises:
            errors.GatewayUnavailable: If the gateway has not been loaded.
            errors.ValidationError: If the card form is not valid.
        """
        if not self._loaded:
            raise errors.GatewayUnavailable("Payment gateway has not been loaded yet")
        if not self.card_form.is_complete:
            raise errors.ValidationError(self.card_form.error)

        try:
            payment_method, intent = await asyncio.to_thread(self._confirm, client_secret, billing_details)
        except stripe.CardError as e:
            log.warning(f"Card declined by Stripe: {e.user_message or e}")
            return ConfirmationResult(outcome=ConfirmationOutcome.FAILED, errorMessage=e.user_message or str(e))
        except stripe.StripeError as e:
            log.error(f"Stripe confirmation failed: {e}")
            return ConfirmationResult(outcome=ConfirmationOutcome.FAILED, errorMessage=e.user_message or str(e))

        status = intent.status
        if status in ("succeeded", "processing"):
            outcome = ConfirmationOutcome.SUCCEEDED
            message = None
        elif status == "canceled":
            outcome = ConfirmationOutcome.USER_CANCELLED
            message = "Payment cancelled"
        else:
            outcome = ConfirmationOutcome.FAILED
            last_error = getattr(intent, "last_payment_error", None)
            message = getattr(last_error, "message", None) or f"Payment not completed (status: {status})"
        log.info(f"Stripe intent {intent.id} confirmed with status '{status}'.")
        return ConfirmationResult(
            outcome=outcome,
            gatewayPaymentIntentId=intent.id,
            gatewayPaymentMethodId=payment_method.id,
            errorMessage=message,
        )
