from __future__ import annotations

import hashlib
import hmac
import json
import time
from decimal import Decimal
from typing import Any, Dict

import requests
from flask import current_app
from requests.exceptions import RequestException, Timeout as RequestsTimeout

from utils.errors import ProviderError, ProviderTimeout, ValidationError
from utils.providers import COMPLETED, FAILED, PENDING, PaymentProvider, ProviderResult

STRIPE_API = "https://api.stripe.com/v1"


class StripeError(ProviderError):
    pass


def _secret_key() -> str:
    key = (current_app.config.get("STRIPE_SECRET_KEY") or "").strip()
    if not key:
        raise StripeError("STRIPE_SECRET_KEY is not configured")
    return key


def _call(method: str, path: str, data: Dict[str, Any] | None = None) -> Dict[str, Any]:
    timeout = int(current_app.config.get("PROVIDER_TIMEOUT_SECONDS", 20))
    try:
        r = requests.request(method, f"{STRIPE_API}{path}", data=data, auth=(_secret_key(), ""), timeout=timeout)
    except RequestsTimeout as e:
        raise ProviderTimeout(f"Stripe request timed out: {e}")
    except RequestException as e:
        raise StripeError(f"Network error contacting Stripe: {type(e).__name__}: {e}")
    try:
        body = r.json()
    except ValueError:
        raise StripeError(f"Stripe returned non-JSON response ({r.status_code})")
    if r.status_code >= 400:
        err = (body.get("error") or {}).get("message") or r.text
        raise StripeError(f"Stripe error {r.status_code}: {err}")
    return body


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


class StripeCheckoutProvider(PaymentProvider):
    """Hosted Stripe Checkout; ``destination`` is the return URL."""

    method = "stripe"

    def initiate(self, amount, destination, reference, description=""):
        success_url = current_app.config.get("STRIPE_SUCCESS_URL") or destination
        cancel_url = current_app.config.get("STRIPE_CANCEL_URL") or destination
        if not success_url:
            raise StripeError("No success URL for Stripe Checkout")
        data = {
            "mode": "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": reference,
            "metadata[payment_id]": reference,
            "line_items[0][quantity]": 1,
            "line_items[0][price_data][currency]": current_app.config.get("STRIPE_CURRENCY", "kes"),
            "line_items[0][price_data][unit_amount]": to_minor_units(amount),
            "line_items[0][price_data][product_data][name]": description or "School fees",
        }
        session = _call("POST", "/checkout/sessions", data)
        return ProviderResult(reference=session["id"], redirect_url=session.get("url"), raw=session)

    def poll_status(self, reference):
        session = _call("GET", f"/checkout/sessions/{reference}")
        if session.get("payment_status") == "paid":
            return COMPLETED
        if session.get("status") == "expired":
            return FAILED
        return PENDING


def verify_webhook(payload: bytes, signature_header: str, secret: str, tolerance: int = 300, now: float | None = None) -> Dict[str, Any]:
    """Check a ``Stripe-Signature`` header and return the decoded event."""
    if not secret:
        raise ValidationError("Webhook secret not configured")
    parts: Dict[str, list[str]] = {}
    for item in (signature_header or "").split(","):
        key, _, value = item.strip().partition("=")
        if key and value:
            parts.setdefault(key, []).append(value)
    try:
        ts = int(parts.get("t", [""])[0])
    except ValueError:
        raise ValidationError("Malformed Stripe-Signature header")
    signed = f"{ts}.".encode("utf-8") + payload
    expected = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, sig) for sig in parts.get("v1", [])):
        raise ValidationError("Invalid webhook signature")
    if abs((now or time.time()) - ts) > tolerance:
        raise ValidationError("Webhook timestamp outside tolerance")
    try:
        return json.loads(payload.decode("utf-8"))
    except ValueError:
        raise ValidationError("Webhook body is not JSON")


def sign_payload(payload: bytes, secret: str, ts: int | None = None) -> str:
    """Build a Stripe-Signature header value (used by tests and local replays)."""
    ts = int(ts or time.time())
    sig = hmac.new(secret.encode("utf-8"), f"{ts}.".encode("utf-8") + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"
