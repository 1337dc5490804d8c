"""Payment records per method, provider hand-off and provider results.

Every initiation writes a ``pending`` Payment before any provider is
contacted, so each attempt leaves an audit trail even when the provider call
never returns.
"""
from __future__ import annotations

from decimal import ROUND_CEILING, Decimal
from typing import Any, Optional

from flask import current_app

from extensions import db
from models import BankProof, Invoice, MpesaTransaction, Payment
from utils.audit import log_event
from utils.errors import (
    AuthorizationError,
    IntegrityViolation,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from utils.mpesa import parse_callback_items
from utils.money import to_decimal
from utils.payment_proofs import save_payment_proof_file
from utils.providers import COMPLETED, FAILED, ProviderResult, get_provider
from utils.reconcile import complete_payment, expired_without_proof, fail_payment, reopen_expired_transfer
from utils.roles import is_admin
from utils.timezone_helpers import parse_mpesa_timestamp, utcnow

CARD_COMPLETED_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")
CARD_FAILED_EVENTS = ("checkout.session.expired", "checkout.session.async_payment_failed")


def bank_details() -> dict:
    cfg = current_app.config
    return {
        "bank_name": cfg.get("BANK_NAME"),
        "account_name": cfg.get("BANK_ACCOUNT_NAME"),
        "account_no": cfg.get("BANK_ACCOUNT_NO"),
        "branch": cfg.get("BANK_BRANCH"),
    }


def validate_phone(phone: Optional[str]) -> str:
    phone = (phone or "").strip()
    min_len = int(current_app.config.get("MIN_PHONE_LENGTH", 10))
    if len(phone) < min_len:
        raise ValidationError(f"Please enter a valid phone number ({min_len} digits, e.g. 0712345678)")
    return phone


def _require_amount(amount: Any) -> Decimal:
    value = to_decimal(amount)
    if value <= 0:
        raise ValidationError("Amount must be greater than zero")
    return value


def _open_payment(invoice: Optional[Invoice], amount: Decimal, method: str, payer_user_id: Optional[str]) -> Payment:
    payment = Payment(
        invoice_id=invoice.id if invoice is not None else None,
        amount=amount,
        method=method,
        status="pending",
        payer_user_id=payer_user_id,
    )
    db.session.add(payment)
    db.session.flush()
    log_event(
        "payment.initiated",
        "payments",
        payment.id,
        {"method": method, "amount": amount, "invoice_id": payment.invoice_id},
        user_id=payer_user_id,
    )
    db.session.commit()
    return payment


def _hand_off(payment: Payment, method: str, amount: Decimal, destination: str, reference: str, description: str, payer_user_id: Optional[str]) -> ProviderResult:
    provider = get_provider(method)
    try:
        result = provider.initiate(amount, destination, reference, description)
    except ProviderError as e:
        current_app.logger.warning("%s initiation for payment %s failed: %s", method, payment.id, e)
        fail_payment(payment.id, str(e), actor_id=payer_user_id)
        raise
    payment.provider_ref = result.reference
    payment.raw_payload = {"initiation": result.raw}
    db.session.commit()
    return result


def initiate_mpesa(invoice: Optional[Invoice], amount: Any, phone: str, *, payer_user_id: Optional[str] = None) -> tuple[Payment, ProviderResult]:
    """Send an STK push. Success means the push was accepted, not that money moved."""
    phone = validate_phone(phone)
    value = _require_amount(amount)
    get_provider("mpesa")
    payment = _open_payment(invoice, value, "mpesa", payer_user_id)
    # M-Pesa only takes whole shillings
    push_amount = value.to_integral_value(rounding=ROUND_CEILING)
    reference = invoice.invoice_no if invoice is not None else payment.id[:12]
    result = _hand_off(payment, "mpesa", push_amount, phone, reference, f"Fees {reference}", payer_user_id)
    return payment, result


def initiate_card(invoice: Optional[Invoice], amount: Any, return_url: str, *, payer_user_id: Optional[str] = None) -> tuple[Payment, ProviderResult]:
    value = _require_amount(amount)
    get_provider("stripe")
    payment = _open_payment(invoice, value, "stripe", payer_user_id)
    description = f"School fees {invoice.invoice_no}" if invoice is not None else "School fees"
    result = _hand_off(payment, "stripe", value, return_url, payment.id, description, payer_user_id)
    return payment, result


def initiate_bank_transfer(invoice: Optional[Invoice], amount: Any, *, payer_user_id: Optional[str] = None) -> tuple[Payment, dict]:
    value = _require_amount(amount)
    payment = _open_payment(invoice, value, "bank_transfer", payer_user_id)
    return payment, bank_details()


# -----------------------------
# Bank proofs
# -----------------------------


def record_bank_proof(payment: Payment, bank_ref: str, file, *, user_id: Optional[str] = None) -> BankProof:
    """Attach a deposit slip. A transfer that expired waiting for it is reopened."""
    if payment.method != "bank_transfer":
        raise ValidationError("Proof of transfer only applies to bank transfers")
    if payment.status != "pending" and not expired_without_proof(payment):
        raise ValidationError(f"Payment is already {payment.status}")
    bank_ref = (bank_ref or "").strip()
    if not bank_ref:
        raise ValidationError("Enter the bank reference from your deposit slip")
    if payment.bank_proof is not None:
        raise IntegrityViolation("A proof has already been uploaded for this payment")
    payment_id = payment.id
    file_url = save_payment_proof_file(file, payment_id)
    if payment.status != "pending":
        reopen_expired_transfer(payment_id, actor_id=user_id)
    proof = BankProof(payment_id=payment_id, bank_ref=bank_ref[:64], file_url=file_url)
    db.session.add(proof)
    db.session.flush()
    log_event("bank_proof.uploaded", "bank_proofs", proof.id, {"payment_id": payment_id, "bank_ref": proof.bank_ref}, user_id=user_id)
    db.session.commit()
    return proof


def _admin_proof(proof_id: str, actor_id: Optional[str]) -> BankProof:
    if not is_admin(actor_id):
        raise AuthorizationError("Only administrators can review bank proofs")
    proof = db.session.get(BankProof, proof_id)
    if proof is None:
        raise NotFoundError("Bank proof not found")
    return proof


def verify_bank_proof(proof_id: str, *, actor_id: Optional[str]):
    """Stamp the proof as verified and reconcile its payment in one transaction."""
    proof = _admin_proof(proof_id, actor_id)
    if proof.payment is None:
        raise IntegrityViolation("Bank proof is not linked to a payment")

    def stamp(payment, invoice):
        row = db.session.get(BankProof, proof_id)
        row.verified_by = actor_id
        row.verified_at = utcnow()
        log_event("bank_proof.verified", "bank_proofs", proof_id, {"payment_id": payment.id}, user_id=actor_id)

    return complete_payment(proof.payment_id, actor_id=actor_id, extra=stamp)


def reject_bank_proof(proof_id: str, reason: str, *, actor_id: Optional[str]) -> Payment:
    proof = _admin_proof(proof_id, actor_id)
    if proof.is_verified:
        raise ValidationError("Proof has already been verified")
    reason = (reason or "").strip() or "Proof rejected"
    payment_id = proof.payment_id
    payment = fail_payment(payment_id, reason, actor_id=actor_id)
    log_event("bank_proof.rejected", "bank_proofs", proof_id, {"payment_id": payment_id, "reason": reason}, user_id=actor_id)
    db.session.commit()
    return payment


def pending_bank_proofs():
    return (
        BankProof.query.join(Payment, BankProof.payment_id == Payment.id)
        .filter(BankProof.verified_at.is_(None), Payment.status == "pending")
        .order_by(BankProof.created_at)
        .all()
    )


# -----------------------------
# Provider results
# -----------------------------


def handle_mpesa_callback(body: dict) -> dict:
    """Apply a Daraja STK callback. Repeated callbacks are harmless."""
    stk = ((body or {}).get("Body") or {}).get("stkCallback") or {}
    checkout_id = stk.get("CheckoutRequestID")
    if not checkout_id:
        raise ValidationError("Callback missing CheckoutRequestID")
    payment = Payment.query.filter_by(provider_ref=checkout_id, method="mpesa").first()
    if payment is None:
        current_app.logger.warning("M-Pesa callback for unknown CheckoutRequestID %s", checkout_id)
        return {"matched": False}

    code = stk.get("ResultCode")
    if str(code) != "0":
        desc = stk.get("ResultDesc") or f"ResultCode {code}"
        fail_payment(payment.id, desc, raw_payload=body)
        return {"matched": True, "status": "failed", "payment_id": payment.id}

    items = parse_callback_items((stk.get("CallbackMetadata") or {}).get("Item") or [])
    receipt = items.get("receipt")
    if not receipt:
        raise ValidationError("Successful callback without MpesaReceiptNumber")
    amount = to_decimal(items.get("amount") if items.get("amount") is not None else payment.amount)
    phone = items.get("phone") or ""

    def record_transaction(p, invoice):
        db.session.add(
            MpesaTransaction(
                payment_id=p.id,
                phone=phone,
                mpesa_receipt_no=str(receipt),
                transaction_date=parse_mpesa_timestamp(items.get("transaction_date")) or utcnow(),
                amount=amount,
            )
        )

    result = complete_payment(payment.id, confirmed_amount=amount, raw_payload=body, extra=record_transaction)
    return {
        "matched": True,
        "status": "completed",
        "payment_id": payment.id,
        "duplicate": result.already_completed,
        "receipt": receipt,
    }


def handle_card_event(event: dict) -> dict:
    etype = (event or {}).get("type") or ""
    obj = ((event or {}).get("data") or {}).get("object") or {}
    payment_id = obj.get("client_reference_id") or (obj.get("metadata") or {}).get("payment_id")
    if etype not in CARD_COMPLETED_EVENTS + CARD_FAILED_EVENTS:
        return {"handled": False, "type": etype}
    if not payment_id:
        raise ValidationError("Card event carries no payment reference")
    if db.session.get(Payment, payment_id) is None:
        current_app.logger.warning("Card event %s for unknown payment %s", etype, payment_id)
        return {"handled": False, "type": etype}

    if etype in CARD_FAILED_EVENTS:
        fail_payment(payment_id, etype, raw_payload=event)
        return {"handled": True, "status": "failed", "payment_id": payment_id}
    if obj.get("payment_status") != "paid":
        return {"handled": False, "type": etype, "payment_status": obj.get("payment_status")}
    confirmed = None
    if obj.get("amount_total") is not None:
        confirmed = Decimal(int(obj["amount_total"])) / 100
    result = complete_payment(payment_id, confirmed_amount=confirmed, provider_ref=obj.get("id"), raw_payload=event)
    return {"handled": True, "status": "completed", "payment_id": payment_id, "duplicate": result.already_completed}


def refresh_payment_status(payment: Payment) -> str:
    """Ask the provider about a pending payment and apply a final answer."""
    if payment.status != "pending" or not payment.provider_ref or payment.method not in ("mpesa", "stripe"):
        return payment.status
    pid = payment.id
    try:
        outcome = get_provider(payment.method).poll_status(payment.provider_ref)
    except ProviderError as e:
        current_app.logger.warning("Status poll for payment %s failed: %s", pid, e)
        return payment.status
    if outcome == COMPLETED:
        complete_payment(pid)
    elif outcome == FAILED:
        fail_payment(pid, "Provider reported failure")
    return db.session.get(Payment, pid).status
