"""Invoice aggregation and invoice-level invariants.

Everything guardian-facing here is a pure function of the invoices fetched for
the current view; nothing is cached or persisted.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Sequence

from sqlalchemy import update

from extensions import db
from models import Invoice, InvoiceLine, Term
from utils.errors import ValidationError
from utils.money import format_kes, to_decimal
from utils.timezone_helpers import utcnow

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

STATUS_LABELS = {
    "paid": "Paid",
    "partial": "Partial",
    "overdue": "Overdue",
    "issued": "Pending",
}
# Unknown or future statuses still render with a styled label
DEFAULT_STATUS_LABEL = "Pending"

# Statuses a reconciliation write never moves an invoice out of
FROZEN_STATUSES = ("cancelled",)
UNPAID_STATUSES = ("draft", "issued", "overdue")


def status_label(status: str | None) -> str:
    return STATUS_LABELS.get((status or "").lower(), DEFAULT_STATUS_LABEL)


def adjustments_total(invoice: Invoice) -> Decimal:
    return sum((to_decimal(a.amount) for a in (invoice.adjustments or [])), ZERO)


def balance_due(invoice: Any, adjusted: Decimal | None = None) -> Decimal:
    """total - paid - adjustments, clamped at zero.

    A negative result is a data-integrity problem; it is logged, not raised.
    ``adjusted`` lets callers skip loading the adjustments relationship.
    """
    total = to_decimal(invoice.total_amount)
    paid = to_decimal(invoice.paid_amount)
    if adjusted is None:
        adjusted = adjustments_total(invoice) if hasattr(invoice, "adjustments") else ZERO
    balance = total - paid - adjusted
    if balance < 0:
        logger.warning(
            "Invoice %s has negative balance %s (total=%s paid=%s adjusted=%s); clamping to zero",
            getattr(invoice, "invoice_no", None) or getattr(invoice, "id", "?"),
            balance,
            total,
            paid,
            adjusted,
        )
        return ZERO
    return balance


def derive_status(total: Any, paid: Any, current: str | None = None, adjusted: Any = ZERO) -> str:
    """Status implied by paid/total.

    paid (plus adjustments) covering the total -> paid; some money in -> partial;
    nothing in -> the current unpaid status (draft/issued/overdue) or issued.
    Cancelled invoices keep their status.
    """
    if current in FROZEN_STATUSES:
        return current
    total = to_decimal(total)
    settled = to_decimal(paid) + to_decimal(adjusted)
    if total > 0 and settled >= total:
        return "paid"
    if settled > 0:
        return "partial"
    if current in UNPAID_STATUSES:
        return current
    return "issued"


def status_is_consistent(invoice: Invoice) -> bool:
    total = to_decimal(invoice.total_amount)
    paid = to_decimal(invoice.paid_amount)
    if paid < 0 or paid > total:
        return False
    expected = derive_status(total, paid, invoice.status, adjustments_total(invoice))
    return expected == invoice.status


def outstanding_balance(invoices: Iterable[Any]) -> Decimal:
    total = ZERO
    for inv in invoices:
        if inv.status == "paid":
            continue
        total += balance_due(inv)
    return total


def upcoming_due_count(invoices: Iterable[Any], now: datetime | date) -> int:
    today = now.date() if isinstance(now, datetime) else now
    return sum(1 for inv in invoices if inv.status == "issued" and inv.due_date and inv.due_date > today)


@dataclass(frozen=True)
class GuardianSummary:
    outstanding: Decimal
    upcoming_due: int
    invoice_count: int

    def as_dict(self) -> dict:
        return {
            "outstanding_balance": float(self.outstanding),
            "outstanding_balance_display": format_kes(self.outstanding),
            "upcoming_due_count": self.upcoming_due,
            "invoice_count": self.invoice_count,
        }


def summarize(invoices: Sequence[Any], now: datetime | date) -> GuardianSummary:
    return GuardianSummary(
        outstanding=outstanding_balance(invoices),
        upcoming_due=upcoming_due_count(invoices, now),
        invoice_count=len(invoices),
    )


def serialize_invoice(invoice: Invoice, with_detail: bool = False) -> dict:
    balance = balance_due(invoice)
    data = {
        "id": invoice.id,
        "invoice_no": invoice.invoice_no,
        "status": invoice.status,
        "status_label": status_label(invoice.status),
        "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
        "total_amount": float(to_decimal(invoice.total_amount)),
        "paid_amount": float(to_decimal(invoice.paid_amount)),
        "balance_due": float(balance),
        "total_display": format_kes(invoice.total_amount),
        "paid_display": format_kes(invoice.paid_amount),
        "balance_display": format_kes(balance),
        "term": invoice.term.name if invoice.term else None,
        "student": invoice.student.full_name if invoice.student else None,
        "can_pay": balance > 0 and invoice.status not in ("paid", "cancelled", "draft"),
    }
    if not with_detail:
        return data
    term = invoice.term
    student = invoice.student
    guardian = invoice.guardian
    data.update(
        {
            "created_at": invoice.created_at.isoformat() if invoice.created_at else None,
            "term": {
                "name": term.name,
                "start_date": term.start_date.isoformat(),
                "end_date": term.end_date.isoformat(),
            } if term else None,
            "student": {
                "admission_no": student.admission_no,
                "name": student.full_name,
                "boarding_status": student.boarding_status,
                "class": student.school_class.name if student.school_class else None,
            } if student else None,
            "guardian": {
                "name": guardian.name,
                "phone": guardian.phone,
                "email": guardian.email,
            } if guardian else None,
            "lines": [
                {"description": ln.description, "amount": float(to_decimal(ln.amount)), "amount_display": format_kes(ln.amount)}
                for ln in invoice.lines
            ],
            "adjustments": [
                {"reason": a.reason, "amount": float(to_decimal(a.amount)), "amount_display": format_kes(a.amount)}
                for a in invoice.adjustments
            ],
            "payments": [
                {
                    "id": p.id,
                    "method": p.method,
                    "status": p.status,
                    "amount": float(to_decimal(p.amount)),
                    "amount_display": format_kes(p.amount),
                    "created_at": p.created_at.isoformat() if p.created_at else None,
                }
                for p in invoice.payments
            ],
        }
    )
    return data


# -----------------------------
# Cross-table invariants the store does not enforce
# -----------------------------


def lines_total(invoice: Invoice) -> Decimal:
    return sum((to_decimal(ln.amount) for ln in invoice.lines), ZERO)


def check_invoice_lines(invoice: Invoice) -> bool:
    """True when the lines add up to total_amount; drift is logged."""
    expected = lines_total(invoice)
    total = to_decimal(invoice.total_amount)
    if expected != total:
        logger.warning("Invoice %s lines sum to %s but total_amount is %s", invoice.invoice_no, expected, total)
        return False
    return True


def create_invoice(
    *,
    invoice_no: str,
    student,
    term: Term,
    due_date: date,
    lines: Sequence[tuple[Any, str, Any]],
    status: str = "issued",
) -> Invoice:
    """Build an invoice from (fee_item, description, amount) lines.

    total_amount is always the sum of the lines. Caller commits.
    """
    if student.guardian_id is None:
        raise ValidationError(f"Student {student.admission_no} has no guardian to bill")
    if not lines:
        raise ValidationError("An invoice needs at least one line")
    invoice = Invoice(
        invoice_no=invoice_no,
        student_id=student.id,
        guardian_id=student.guardian_id,
        term_id=term.id,
        due_date=due_date,
        status=status,
        paid_amount=ZERO,
    )
    total = ZERO
    for fee_item, description, amount in lines:
        amt = to_decimal(amount)
        if amt <= 0:
            raise ValidationError(f"Line '{description}' must have a positive amount")
        invoice.lines.append(InvoiceLine(fee_item_id=fee_item.id, description=description, amount=amt))
        total += amt
    invoice.total_amount = total
    db.session.add(invoice)
    return invoice


def current_term() -> Term | None:
    active = Term.query.filter_by(active=True).order_by(Term.start_date.desc()).all()
    if len(active) > 1:
        logger.warning("%d terms are marked active; using the latest (%s)", len(active), active[0].name)
    return active[0] if active else None


def activate_term(term: Term) -> Term:
    """Make ``term`` the only active term. Caller commits."""
    Term.query.filter(Term.id != term.id, Term.active.is_(True)).update({"active": False}, synchronize_session="fetch")
    term.active = True
    return term


def mark_overdue_invoices(today: date) -> int:
    """issued invoices past their due date become overdue. Caller commits.

    One guarded UPDATE: the status test is re-evaluated at write time and the
    version moves, so a concurrent reconciliation is never overwritten.
    """
    res = db.session.execute(
        update(Invoice)
        .where(Invoice.status == "issued", Invoice.due_date < today)
        .values(status="overdue", version=Invoice.version + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    count = res.rowcount or 0
    if count:
        logger.info("Marked %d invoice(s) overdue", count)
    return count
