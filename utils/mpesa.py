from __future__ import annotations

import base64
from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import requests
from flask import current_app
from requests.exceptions import RequestException, Timeout as RequestsTimeout

from utils.errors import ProviderError, ProviderTimeout
from utils.providers import COMPLETED, FAILED, PENDING, PaymentProvider, ProviderResult

# Daraja answers a status query with this while the customer is still on the PIN prompt
STILL_PROCESSING_CODE = "500.001.1001"


class DarajaError(ProviderError):
    pass


def _cfg(key: str, default: str = "") -> str:
    val = current_app.config.get(key)
    if val is None:
        return default
    val = str(val).strip()
    return val or default


def _base_url() -> str:
    env = _cfg("DARAJA_ENV", "sandbox").lower()
    return "https://api.safaricom.co.ke" if env == "production" else "https://sandbox.safaricom.co.ke"


def _timeout() -> int:
    return int(current_app.config.get("PROVIDER_TIMEOUT_SECONDS", 20))


def _timestamp() -> str:
    return datetime.now().strftime("%Y%m%d%H%M%S")


def _password(short_code: str, passkey: str, ts: str) -> str:
    raw = f"{short_code}{passkey}{ts}".encode("utf-8")
    return base64.b64encode(raw).decode("utf-8")


def _request(method: str, url: str, what: str, **kwargs) -> Dict[str, Any]:
    try:
        r = requests.request(method, url, timeout=_timeout(), **kwargs)
    except RequestsTimeout as e:
        raise ProviderTimeout(f"Daraja {what} timed out: {e}")
    except RequestException as e:
        raise DarajaError(f"Network/SSL error during Daraja {what}: {type(e).__name__}: {e}")
    try:
        data = r.json()
    except ValueError:
        raise DarajaError(f"Daraja {what} failed: non-JSON response ({r.status_code})")
    if r.status_code != 200 and not data.get("errorCode"):
        raise DarajaError(f"Daraja {what} failed: {r.status_code} {r.text}")
    return data


def get_access_token() -> str:
    key = _cfg("DARAJA_CONSUMER_KEY")
    secret = _cfg("DARAJA_CONSUMER_SECRET")
    if not key or not secret:
        raise DarajaError("Daraja consumer key/secret not configured")
    data = _request(
        "GET",
        f"{_base_url()}/oauth/v1/generate?grant_type=client_credentials",
        "auth",
        auth=(key, secret),
    )
    token = data.get("access_token") or ""
    if not token:
        raise DarajaError("Auth failed: access_token missing in response")
    return token


def _resolve_callback_url(callback_url: Optional[str] = None) -> str:
    cb = (callback_url or _cfg("DARAJA_CALLBACK_URL")).strip()
    if not cb:
        raise DarajaError(
            "DARAJA_CALLBACK_URL is not set. Provide your public HTTPS callback (e.g. https://your-host/mpesa/callback)."
        )
    pr = urlparse(cb)
    host = (pr.hostname or "").lower()
    if (pr.scheme or "").lower() != "https" or not host:
        raise DarajaError("CallBackURL must be a public HTTPS endpoint ending in /mpesa/callback.")
    if host in {"localhost", "127.0.0.1", "0.0.0.0"}:
        raise DarajaError("CallBackURL must not target a localhost or private host.")
    return cb


def normalize_msisdn(phone: str) -> str:
    p = (phone or "").strip().replace(" ", "")
    if p.startswith("+"):
        p = p[1:]
    if p.startswith("0"):
        p = "254" + p[1:]
    if p.startswith("254"):
        return p
    # Fallback: digits only, take last 9 with 254 prefix
    digits = "".join(ch for ch in p if ch.isdigit())
    if len(digits) >= 9:
        return "254" + digits[-9:]
    return p


def _short_code_and_passkey() -> tuple[str, str]:
    short_code = _cfg("DARAJA_SHORT_CODE")
    passkey = _cfg("DARAJA_PASSKEY")
    if not short_code or not passkey:
        raise DarajaError("Daraja ShortCode/Passkey not configured")
    return short_code, passkey


def stk_push(phone: str, amount: int, account_ref: str, trans_desc: Optional[str] = None, callback_url: Optional[str] = None) -> Dict[str, Any]:
    short_code, passkey = _short_code_and_passkey()
    token = get_access_token()
    ts = _timestamp()
    msisdn = normalize_msisdn(phone)
    payload = {
        "BusinessShortCode": short_code,
        "Password": _password(short_code, passkey, ts),
        "Timestamp": ts,
        "TransactionType": "CustomerPayBillOnline",
        "Amount": int(amount),
        "PartyA": msisdn,
        "PartyB": short_code,
        "PhoneNumber": msisdn,
        "CallBackURL": _resolve_callback_url(callback_url),
        "AccountReference": account_ref[:12],
        "TransactionDesc": trans_desc or _cfg("DARAJA_TRANSACTION_DESC", "School fees"),
    }
    headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
    data = _request("POST", f"{_base_url()}/mpesa/stkpush/v1/processrequest", "STK push", json=payload, headers=headers)
    if str(data.get("ResponseCode")) != "0":
        raise DarajaError(data.get("errorMessage") or data.get("ResponseDescription") or "STK push rejected")
    return data


def stk_query(checkout_request_id: str) -> Dict[str, Any]:
    short_code, passkey = _short_code_and_passkey()
    token = get_access_token()
    ts = _timestamp()
    payload = {
        "BusinessShortCode": short_code,
        "Password": _password(short_code, passkey, ts),
        "Timestamp": ts,
        "CheckoutRequestID": checkout_request_id,
    }
    headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
    return _request("POST", f"{_base_url()}/mpesa/stkpushquery/v1/query", "STK query", json=payload, headers=headers)


def parse_callback_items(items: list[dict]) -> dict:
    out: Dict[str, Any] = {}
    for it in items or []:
        name = it.get("Name")
        val = it.get("Value")
        if name == "MpesaReceiptNumber" or (name and "Receipt" in name):
            out["receipt"] = val
        elif name == "Amount":
            out["amount"] = val
        elif name in ("PhoneNumber", "MSISDN"):
            out["phone"] = str(val)
        elif name == "TransactionDate":
            out["transaction_date"] = str(val)
        elif name == "Balance":
            out["balance"] = val
    return out


class DarajaProvider(PaymentProvider):
    """Lipa Na M-PESA Online (STK push) against Safaricom Daraja."""

    method = "mpesa"

    def initiate(self, amount, destination, reference, description=""):
        res = stk_push(
            phone=destination,
            amount=int(amount),
            account_ref=reference,
            trans_desc=description or None,
        )
        checkout_id = res.get("CheckoutRequestID")
        if not checkout_id:
            raise DarajaError("STK push response missing CheckoutRequestID")
        return ProviderResult(
            reference=checkout_id,
            message=res.get("CustomerMessage") or "STK push sent",
            raw=res,
        )

    def poll_status(self, reference):
        data = stk_query(reference)
        if data.get("errorCode") == STILL_PROCESSING_CODE:
            return PENDING
        code = data.get("ResultCode")
        if code is None:
            return PENDING
        return COMPLETED if str(code) == "0" else FAILED
