"""The pay-an-invoice dialog as a small state machine.

    select -> details -> processing -> success
                 ^           |
                 +-----------+  (validation keeps the user on details)

A provider failure or timeout sends the user back to ``select`` with the
error so they can retry or pick another method. Closing the dialog always
resets to ``select``. The flow is kept in the Flask session per invoice.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Optional

from flask import session

from utils.errors import ProviderError, ValidationError
from utils.money import to_decimal

SELECT = "select"
DETAILS = "details"
PROCESSING = "processing"
SUCCESS = "success"
STATES = (SELECT, DETAILS, PROCESSING, SUCCESS)

METHODS = ("mpesa", "stripe", "bank_transfer")
METHOD_ALIASES = {"card": "stripe", "bank": "bank_transfer", "m-pesa": "mpesa"}

_SESSION_PREFIX = "pay_flow:"


class FlowStateError(ValidationError):
    pass


def normalize_method(value: Optional[str]) -> str:
    method = (value or "").strip().lower()
    method = METHOD_ALIASES.get(method, method)
    if method not in METHODS:
        raise ValidationError(f"Unknown payment method {value!r}")
    return method


@dataclass
class PaymentFlow:
    invoice_id: str
    amount: str
    state: str = SELECT
    method: Optional[str] = None
    payment_id: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None
    redirect_url: Optional[str] = None
    bank: Optional[dict] = None

    @property
    def amount_value(self) -> Decimal:
        return to_decimal(self.amount)

    def _expect(self, *states: str) -> None:
        if self.state not in states:
            raise FlowStateError(f"Cannot do that while the payment dialog is in '{self.state}'")

    def select_method(self, method: str) -> "PaymentFlow":
        self._expect(SELECT, DETAILS)
        self.method = normalize_method(method)
        self.state = DETAILS
        self.error = None
        return self

    def back(self) -> "PaymentFlow":
        self._expect(DETAILS)
        self.state = SELECT
        self.method = None
        self.error = None
        return self

    def submit(self, data: dict, *, invoice, payer_user_id: Optional[str], return_url: str = "") -> "PaymentFlow":
        """details -> processing -> success, or back to details/select on error.

        The error is re-raised after the state has been moved so the caller
        can persist the flow and report it.
        """
        from utils import payments

        self._expect(DETAILS)
        self.error = None
        if self.method == "mpesa":
            try:
                payments.validate_phone((data or {}).get("phone"))
            except ValidationError as e:
                self.error = e.message
                raise
        self.state = PROCESSING
        try:
            if self.method == "mpesa":
                payment, result = payments.initiate_mpesa(
                    invoice, self.amount_value, data.get("phone"), payer_user_id=payer_user_id
                )
                self.message = result.message or "Check your phone and enter your M-Pesa PIN to complete payment."
            elif self.method == "stripe":
                payment, result = payments.initiate_card(invoice, self.amount_value, return_url, payer_user_id=payer_user_id)
                self.redirect_url = result.redirect_url
                self.message = "Continue to the secure card payment page."
            else:
                payment, self.bank = payments.initiate_bank_transfer(invoice, self.amount_value, payer_user_id=payer_user_id)
                self.message = "Payment recorded as pending. Upload your deposit slip once the transfer is done."
        except ProviderError as e:
            self.fail(e.message)
            raise
        except ValidationError as e:
            self.state = DETAILS
            self.error = e.message
            raise
        self.payment_id = payment.id
        self.state = SUCCESS
        return self

    def fail(self, error: str) -> "PaymentFlow":
        self.state = SELECT
        self.method = None
        self.payment_id = None
        self.error = error
        return self

    def close(self) -> "PaymentFlow":
        return PaymentFlow(invoice_id=self.invoice_id, amount=self.amount)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> Optional["PaymentFlow"]:
        if not isinstance(data, dict) or data.get("state") not in STATES:
            return None
        try:
            return cls(**{k: data.get(k) for k in cls.__dataclass_fields__ if k in data})
        except TypeError:
            return None


def load_flow(invoice_id: str, amount: Any) -> PaymentFlow:
    """Flow for this invoice from the session, or a fresh one at ``select``.

    A stored flow whose amount no longer matches the balance is discarded.
    """
    amount_str = str(to_decimal(amount))
    flow = PaymentFlow.from_dict(session.get(_SESSION_PREFIX + invoice_id))
    if flow is None or flow.invoice_id != invoice_id or (flow.amount != amount_str and flow.state != SUCCESS):
        flow = PaymentFlow(invoice_id=invoice_id, amount=amount_str)
    return flow


def save_flow(flow: PaymentFlow) -> None:
    session[_SESSION_PREFIX + flow.invoice_id] = flow.to_dict()


def clear_flow(invoice_id: str) -> None:
    session.pop(_SESSION_PREFIX + invoice_id, None)
