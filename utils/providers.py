"""Payment provider clients.

Every provider answers two questions: start moving ``amount`` towards a
destination (``initiate``) and what happened to a reference (``poll_status``).
Reconciliation only ever sees the answers, never the provider.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

from flask import current_app

from utils.errors import ProviderError

PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"


@dataclass
class ProviderResult:
    reference: str
    redirect_url: Optional[str] = None
    message: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentProvider:
    method = ""

    def initiate(self, amount: Decimal, destination: str, reference: str, description: str = "") -> ProviderResult:
        raise NotImplementedError

    def poll_status(self, reference: str) -> str:
        raise NotImplementedError


class StubProvider(PaymentProvider):
    """Accepts every request locally; payments stay pending until a callback."""

    def __init__(self, method: str):
        self.method = method

    def initiate(self, amount, destination, reference, description=""):
        ref = f"STUB-{self.method.upper()}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"
        redirect_url = None
        if self.method == "stripe":
            redirect_url = f"{destination or '/'}?stub_session={ref}"
        return ProviderResult(
            reference=ref,
            redirect_url=redirect_url,
            message="Success. Request accepted for processing",
            raw={"stub": True, "amount": str(amount), "reference": reference},
        )

    def poll_status(self, reference):
        return PENDING


def build_providers(app) -> Dict[str, PaymentProvider]:
    if app.config.get("PAYMENTS_STUB"):
        return {"mpesa": StubProvider("mpesa"), "stripe": StubProvider("stripe")}
    from utils.mpesa import DarajaProvider
    from utils.stripe_checkout import StripeCheckoutProvider

    return {"mpesa": DarajaProvider(), "stripe": StripeCheckoutProvider()}


def get_provider(method: str) -> PaymentProvider:
    providers = current_app.extensions.get("payment_providers") or {}
    provider = providers.get(method)
    if provider is None:
        raise ProviderError(f"No payment provider configured for {method}")
    return provider
