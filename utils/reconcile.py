"""Invoice/payment reconciliation.

A payment reaching ``completed`` and its invoice's ``paid_amount``/``status``
move in one transaction. Per-invoice exclusivity comes from a row lock
(``SELECT ... FOR UPDATE`` where the backend supports it) plus a guarded
``UPDATE ... WHERE version = :seen``; a lost race raises StaleInvoiceError and
the whole unit of work is retried from a fresh read.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Optional

from flask import current_app
from sqlalchemy import and_, func, or_, update

from extensions import db
from models import Invoice, Payment, ScholarshipAdjustment
from utils.audit import log_event
from utils.errors import (
    AuthorizationError,
    NotFoundError,
    ProviderError,
    ReconciliationError,
    StaleInvoiceError,
    ValidationError,
)
from utils.invoices import FROZEN_STATUSES, ZERO, balance_due, derive_status
from utils.money import parse_amount, to_decimal
from utils.roles import is_admin
from utils.timezone_helpers import utcnow

COMPLETABLE_FROM = ("pending", "failed")


@dataclass
class ReconciliationResult:
    payment: Payment
    invoice: Optional[Invoice]
    credited: Decimal
    excess: Decimal
    already_completed: bool = False


def _lock_payment(payment_id: str) -> Optional[Payment]:
    stmt = (
        db.select(Payment)
        .where(Payment.id == payment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return db.session.execute(stmt).scalar_one_or_none()


def _lock_invoice(invoice_id: str) -> Invoice:
    stmt = (
        db.select(Invoice)
        .where(Invoice.id == invoice_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    invoice = db.session.execute(stmt).scalar_one_or_none()
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return invoice


def _adjusted_total(invoice_id: str) -> Decimal:
    total = db.session.execute(
        db.select(func.coalesce(func.sum(ScholarshipAdjustment.amount), 0)).where(
            ScholarshipAdjustment.invoice_id == invoice_id
        )
    ).scalar_one()
    return to_decimal(total)


def _write_invoice(invoice: Invoice, seen_version: int, **values: Any) -> None:
    res = db.session.execute(
        update(Invoice)
        .where(Invoice.id == invoice.id, Invoice.version == seen_version)
        .values(version=seen_version + 1, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise StaleInvoiceError(f"Invoice {invoice.invoice_no} changed concurrently")


def _write_payment(payment: Payment, seen_status: str, **values: Any) -> None:
    res = db.session.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status == seen_status)
        .values(updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise StaleInvoiceError(f"Payment {payment.id} changed concurrently")


def _retrying(unit: Callable[[], Any], what: str) -> Any:
    retries = int(current_app.config.get("RECONCILE_MAX_RETRIES", 5))
    for attempt in range(1, retries + 1):
        try:
            result = unit()
            db.session.commit()
            return result
        except StaleInvoiceError as e:
            db.session.rollback()
            current_app.logger.info("%s lost a race (attempt %d/%d): %s", what, attempt, retries, e)
        except Exception:
            db.session.rollback()
            raise
    raise ReconciliationError(f"{what} could not be applied after {retries} attempts")


def complete_payment(
    payment_id: str,
    *,
    confirmed_amount: Any = None,
    provider_ref: Optional[str] = None,
    raw_payload: Any = None,
    actor_id: Optional[str] = None,
    extra: Optional[Callable[[Payment, Optional[Invoice]], None]] = None,
) -> ReconciliationResult:
    """Mark a payment completed and credit its invoice, atomically.

    ``confirmed_amount`` is what the provider says actually moved; it defaults
    to the requested amount. Anything beyond the invoice's remaining balance is
    not credited; it is recorded as an overpayment in the audit log.
    ``extra`` runs inside the same transaction (detail rows, proof verification).
    Completing an already completed payment is a no-op.
    """

    def unit() -> ReconciliationResult:
        payment = _lock_payment(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        if payment.status == "completed":
            return ReconciliationResult(payment, payment.invoice, ZERO, ZERO, already_completed=True)
        if payment.status not in COMPLETABLE_FROM:
            raise ReconciliationError(f"Payment {payment.id} is {payment.status} and cannot be completed")
        amount = to_decimal(payment.amount if confirmed_amount is None else confirmed_amount)
        if amount <= 0:
            raise ReconciliationError(f"Payment {payment.id} confirmed a non-positive amount {amount}")

        seen_status = payment.status
        invoice = None
        credited, excess = amount, ZERO
        if payment.invoice_id:
            invoice = _lock_invoice(payment.invoice_id)
            if invoice.status in FROZEN_STATUSES:
                raise ReconciliationError(f"Invoice {invoice.invoice_no} is {invoice.status}; payment left for review")
            adjusted = _adjusted_total(invoice.id)
            remaining = balance_due(invoice, adjusted)
            credited = min(amount, remaining)
            excess = amount - credited
            new_paid = to_decimal(invoice.paid_amount) + credited
            _write_invoice(
                invoice,
                invoice.version,
                paid_amount=new_paid,
                status=derive_status(invoice.total_amount, new_paid, invoice.status, adjusted),
            )

        values: dict[str, Any] = {"status": "completed"}
        if provider_ref:
            values["provider_ref"] = provider_ref
        if raw_payload is not None:
            values["raw_payload"] = raw_payload
        _write_payment(payment, seen_status, **values)

        data = {"amount": amount, "credited": credited, "method": payment.method, "invoice_id": payment.invoice_id}
        log_event("payment.completed", "payments", payment.id, data, user_id=actor_id)
        if seen_status == "failed":
            log_event("payment.late_completion", "payments", payment.id, {"amount": amount}, user_id=actor_id)
        if excess > 0:
            current_app.logger.warning("Payment %s over-pays invoice %s by %s", payment.id, payment.invoice_id, excess)
            log_event("payment.overpayment", "payments", payment.id, {"excess": excess, "invoice_id": payment.invoice_id}, user_id=actor_id)
        if invoice is None:
            log_event("payment.unallocated", "payments", payment.id, {"amount": amount}, user_id=actor_id)
        if extra is not None:
            extra(payment, invoice)
        return ReconciliationResult(payment, invoice, credited, excess)

    result = _retrying(unit, f"Completing payment {payment_id}")
    if not result.already_completed:
        current_app.logger.info("Payment %s completed; credited %s", payment_id, result.credited)
        from utils.notify import send_payment_receipt

        send_payment_receipt(result.payment)
    return result


def fail_payment(payment_id: str, reason: str, *, raw_payload: Any = None, actor_id: Optional[str] = None) -> Payment:
    """pending -> failed with an audit entry; other statuses are left alone."""

    def unit() -> Payment:
        payment = _lock_payment(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        if payment.status != "pending":
            return payment
        values: dict[str, Any] = {"status": "failed"}
        if raw_payload is not None:
            values["raw_payload"] = raw_payload
        _write_payment(payment, "pending", **values)
        log_event("payment.failed", "payments", payment.id, {"reason": reason, "method": payment.method}, user_id=actor_id)
        return payment

    payment = _retrying(unit, f"Failing payment {payment_id}")
    current_app.logger.info("Payment %s marked failed: %s", payment_id, reason)
    return payment


def apply_adjustment(invoice_id: str, amount: Any, reason: str, *, actor_id: Optional[str]) -> ScholarshipAdjustment:
    """Record a scholarship/adjustment and recompute the invoice status."""
    if not is_admin(actor_id):
        raise AuthorizationError("Only administrators can apply adjustments")
    value = parse_amount(amount)
    if value is None:
        raise ValidationError("Amount must be a number")
    if value <= 0:
        raise ValidationError("Adjustment amount must be greater than zero")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required")

    def unit() -> ScholarshipAdjustment:
        invoice = _lock_invoice(invoice_id)
        if invoice.status in FROZEN_STATUSES:
            raise ValidationError(f"Invoice {invoice.invoice_no} is {invoice.status}")
        adjusted = _adjusted_total(invoice.id)
        remaining = balance_due(invoice, adjusted)
        if value > remaining:
            raise ValidationError(f"Adjustment exceeds the remaining balance of {remaining}")
        adj = ScholarshipAdjustment(
            student_id=invoice.student_id,
            invoice_id=invoice.id,
            amount=value,
            reason=reason,
            applied_by=actor_id,
        )
        db.session.add(adj)
        _write_invoice(
            invoice,
            invoice.version,
            status=derive_status(invoice.total_amount, invoice.paid_amount, invoice.status, adjusted + value),
        )
        db.session.flush()
        log_event("invoice.adjusted", "invoices", invoice.id, {"amount": value, "reason": reason, "adjustment_id": adj.id}, user_id=actor_id)
        return adj

    return _retrying(unit, f"Adjusting invoice {invoice_id}")


EXPIRED_MARKER = "expired_at"


def expired_without_proof(payment: Payment) -> bool:
    """A bank transfer the sweep failed only because no slip arrived in time."""
    return (
        payment.method == "bank_transfer"
        and payment.status == "failed"
        and isinstance(payment.raw_payload, dict)
        and EXPIRED_MARKER in payment.raw_payload
    )


def reopen_expired_transfer(payment_id: str, *, actor_id: Optional[str] = None) -> Payment:
    """failed -> pending for a transfer that expired waiting for its slip."""

    def unit() -> Payment:
        payment = _lock_payment(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        if payment.status == "pending":
            return payment
        if not expired_without_proof(payment):
            raise ValidationError(f"Payment is already {payment.status}")
        _write_payment(payment, "failed", status="pending", raw_payload={"reopened": payment.raw_payload})
        log_event("payment.reopened", "payments", payment.id, {"method": payment.method}, user_id=actor_id)
        return payment

    return _retrying(unit, f"Reopening payment {payment_id}")


def expire_stale_payments(now: Optional[datetime] = None, ttl_minutes: Optional[int] = None) -> dict:
    """Resolve payments stuck in pending past their TTL.

    Provider-backed payments are polled first so a late success is still
    credited; unresolved ones are failed. Bank transfers have their own, much
    longer window (``BANK_TRANSFER_TTL_DAYS``) and are only expired when no
    proof was ever uploaded; a slip arriving later reopens them.
    """
    from utils.providers import COMPLETED, FAILED, get_provider

    now = now or utcnow()
    ttl = ttl_minutes if ttl_minutes is not None else int(current_app.config.get("PENDING_PAYMENT_TTL_MINUTES", 30))
    bank_ttl_days = int(current_app.config.get("BANK_TRANSFER_TTL_DAYS", 7))
    cutoff = now - timedelta(minutes=ttl)
    bank_cutoff = now - timedelta(days=bank_ttl_days)
    stale = (
        Payment.query.filter(
            Payment.status == "pending",
            or_(
                and_(Payment.method != "bank_transfer", Payment.created_at < cutoff),
                and_(Payment.method == "bank_transfer", Payment.created_at < bank_cutoff),
            ),
        )
        .order_by(Payment.created_at)
        .all()
    )
    stats = {"checked": len(stale), "completed": 0, "failed": 0, "left_pending": 0}
    for payment in stale:
        pid, method, ref = payment.id, payment.method, payment.provider_ref
        if method == "bank_transfer":
            if payment.bank_proof is not None:
                stats["left_pending"] += 1
                continue
            fail_payment(pid, "No proof of transfer uploaded before expiry", raw_payload={EXPIRED_MARKER: now.isoformat()})
            stats["failed"] += 1
            continue
        outcome = None
        if ref and method in ("mpesa", "stripe"):
            try:
                outcome = get_provider(method).poll_status(ref)
            except ProviderError as e:
                current_app.logger.warning("Status poll for payment %s failed: %s", pid, e)
        if outcome == COMPLETED:
            complete_payment(pid, provider_ref=ref)
            stats["completed"] += 1
        else:
            reason = "Provider reported failure" if outcome == FAILED else "Expired while pending"
            fail_payment(pid, reason)
            stats["failed"] += 1
    if stale:
        current_app.logger.info("Stale payment sweep: %s", stats)
    return stats
