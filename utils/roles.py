"""Role checks and row scoping.

``has_role``/``is_admin`` are the only authorization predicates the payment
core consults; the query helpers below apply the same rules row-by-row the
way the store's row-level policies do.
"""
from __future__ import annotations

from typing import Optional

from sqlalchemy import false

from extensions import db
from models import APP_ROLES, Guardian, Invoice, Payment, Student, UserRole

ADMIN_ROLES = ("super_admin", "bursar")
# Roles allowed to read every guardian's records
READ_ALL_ROLES = ("super_admin", "bursar", "registrar", "auditor")


def roles_for(user_id: Optional[str]) -> set[str]:
    if not user_id:
        return set()
    rows = db.session.execute(db.select(UserRole.role).where(UserRole.user_id == user_id)).scalars()
    return set(rows)


def has_role(user_id: Optional[str], role: str) -> bool:
    if role not in APP_ROLES:
        raise ValueError(f"Unknown role {role!r}")
    return role in roles_for(user_id)


def is_admin(user_id: Optional[str]) -> bool:
    return bool(roles_for(user_id) & set(ADMIN_ROLES))


def can_read_all(user_id: Optional[str]) -> bool:
    return bool(roles_for(user_id) & set(READ_ALL_ROLES))


def grant_role(user_id: str, role: str) -> UserRole:
    existing = UserRole.query.filter_by(user_id=user_id, role=role).first()
    if existing:
        return existing
    row = UserRole(user_id=user_id, role=role)
    db.session.add(row)
    return row


def guardian_for_user(user_id: Optional[str]) -> Optional[Guardian]:
    if not user_id:
        return None
    return Guardian.query.filter_by(user_id=user_id).first()


def visible_invoices(user_id: Optional[str]):
    """Invoice query limited to what ``user_id`` may read."""
    q = Invoice.query
    if can_read_all(user_id):
        return q
    if not user_id:
        return q.filter(false())
    return q.join(Guardian, Invoice.guardian_id == Guardian.id).filter(Guardian.user_id == user_id)


def visible_students(user_id: Optional[str]):
    q = Student.query
    if can_read_all(user_id):
        return q
    if not user_id:
        return q.filter(false())
    return q.join(Guardian, Student.guardian_id == Guardian.id).filter(Guardian.user_id == user_id)


def can_read_invoice(user_id: Optional[str], invoice: Invoice) -> bool:
    if can_read_all(user_id):
        return True
    guardian = invoice.guardian
    return bool(user_id and guardian and guardian.user_id == user_id)


def can_read_payment(user_id: Optional[str], payment: Payment) -> bool:
    if can_read_all(user_id):
        return True
    if payment.payer_user_id and payment.payer_user_id == user_id:
        return True
    return bool(payment.invoice and can_read_invoice(user_id, payment.invoice))
