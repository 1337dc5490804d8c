from __future__ import annotations

import uuid
from decimal import Decimal

from sqlalchemy import event, inspect
from sqlalchemy.orm import validates

from extensions import db
from utils.timezone_helpers import utcnow

APP_ROLES = ("super_admin", "bursar", "registrar", "teacher", "parent", "student", "auditor")
BOARDING_STATUSES = ("day", "boarding")
INVOICE_STATUSES = ("draft", "issued", "paid", "partial", "overdue", "cancelled")
PAYMENT_METHODS = ("mpesa", "stripe", "bank_transfer", "manual")
PAYMENT_STATUSES = ("pending", "completed", "failed", "refunded")


def _uuid() -> str:
    return str(uuid.uuid4())


def _enum(values, name):
    return db.Enum(*values, name=name, create_constraint=True, validate_strings=True)


def _check_enum(field: str, value, allowed) -> str:
    if value not in allowed:
        raise ValueError(f"Invalid {field} {value!r}; expected one of {', '.join(allowed)}")
    return value


class AppendOnlyError(RuntimeError):
    pass


class TimestampMixin:
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class User(db.Model):
    """Authentication principal plus the profile fields shown in the portal."""

    __tablename__ = "users"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    email = db.Column(db.String(255), nullable=False, unique=True, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(150), nullable=False)
    phone = db.Column(db.String(32))
    address = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    roles = db.relationship("UserRole", backref="user", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<User {self.email}>"


class UserRole(db.Model):
    __tablename__ = "user_roles"
    __table_args__ = (db.UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),)

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
    role = db.Column(_enum(APP_ROLES, "app_role"), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    @validates("role")
    def _validate_role(self, key, value):
        return _check_enum("app_role", value, APP_ROLES)


class Guardian(TimestampMixin, db.Model):
    __tablename__ = "guardians"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True, index=True)
    name = db.Column(db.String(150), nullable=False)
    phone = db.Column(db.String(32), nullable=False)
    email = db.Column(db.String(255))
    address = db.Column(db.String(255))

    students = db.relationship("Student", backref="guardian")
    invoices = db.relationship("Invoice", backref="guardian")

    def __repr__(self):
        return f"<Guardian {self.name}>"


class SchoolClass(db.Model):
    __tablename__ = "classes"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(50), nullable=False)
    level = db.Column(db.Integer, nullable=False)
    year = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    students = db.relationship("Student", backref="school_class")


class Student(TimestampMixin, db.Model):
    __tablename__ = "students"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    admission_no = db.Column(db.String(50), nullable=False, unique=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    date_of_birth = db.Column(db.Date)
    boarding_status = db.Column(_enum(BOARDING_STATUSES, "boarding_status"), nullable=False, default="day")
    class_id = db.Column(db.String(36), db.ForeignKey("classes.id"), nullable=True, index=True)
    guardian_id = db.Column(db.String(36), db.ForeignKey("guardians.id"), nullable=True, index=True)

    invoices = db.relationship("Invoice", backref="student")
    adjustments = db.relationship("ScholarshipAdjustment", backref="student")

    @validates("boarding_status")
    def _validate_boarding(self, key, value):
        return _check_enum("boarding_status", value, BOARDING_STATUSES)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def __repr__(self):
        return f"<Student {self.full_name} ({self.admission_no})>"


class Term(db.Model):
    __tablename__ = "terms"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(100), nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    active = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (db.CheckConstraint("end_date >= start_date", name="ck_terms_dates"),)


class FeeItem(db.Model):
    __tablename__ = "fee_items"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    code = db.Column(db.String(32), nullable=False, unique=True)
    title = db.Column(db.String(150), nullable=False)
    category = db.Column(db.String(64), nullable=False)
    description = db.Column(db.Text)
    default_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)


class FeeStructure(db.Model):
    __tablename__ = "fee_structures"
    __table_args__ = (
        db.UniqueConstraint("class_id", "fee_item_id", "term_id", name="uq_fee_structures_class_item_term"),
        db.CheckConstraint("amount >= 0", name="ck_fee_structures_amount"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    class_id = db.Column(db.String(36), db.ForeignKey("classes.id"), nullable=False)
    fee_item_id = db.Column(db.String(36), db.ForeignKey("fee_items.id"), nullable=False)
    term_id = db.Column(db.String(36), db.ForeignKey("terms.id"), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    fee_item = db.relationship("FeeItem")


class Invoice(TimestampMixin, db.Model):
    __tablename__ = "invoices"
    __table_args__ = (
        db.CheckConstraint("total_amount >= 0", name="ck_invoices_total"),
        db.CheckConstraint("paid_amount >= 0 AND paid_amount <= total_amount", name="ck_invoices_paid"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    invoice_no = db.Column(db.String(32), nullable=False, unique=True)
    student_id = db.Column(db.String(36), db.ForeignKey("students.id"), nullable=False, index=True)
    guardian_id = db.Column(db.String(36), db.ForeignKey("guardians.id"), nullable=False, index=True)
    term_id = db.Column(db.String(36), db.ForeignKey("terms.id"), nullable=False, index=True)
    due_date = db.Column(db.Date, nullable=False)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))
    paid_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))
    status = db.Column(_enum(INVOICE_STATUSES, "invoice_status"), nullable=False, default="draft")
    # Bumped on every reconciliation write; guards read-then-write races
    version = db.Column(db.Integer, nullable=False, default=0)

    term = db.relationship("Term")
    lines = db.relationship("InvoiceLine", backref="invoice", cascade="all, delete-orphan", order_by="InvoiceLine.created_at")
    payments = db.relationship("Payment", backref="invoice", order_by="Payment.created_at")
    adjustments = db.relationship("ScholarshipAdjustment", backref="invoice")

    @validates("status")
    def _validate_status(self, key, value):
        return _check_enum("invoice_status", value, INVOICE_STATUSES)

    def __repr__(self):
        return f"<Invoice {self.invoice_no} {self.status} {self.paid_amount}/{self.total_amount}>"


class InvoiceLine(db.Model):
    __tablename__ = "invoice_lines"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    invoice_id = db.Column(db.String(36), db.ForeignKey("invoices.id"), nullable=False, index=True)
    fee_item_id = db.Column(db.String(36), db.ForeignKey("fee_items.id"), nullable=False)
    description = db.Column(db.String(255), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    fee_item = db.relationship("FeeItem")


class Payment(TimestampMixin, db.Model):
    __tablename__ = "payments"
    __table_args__ = (db.CheckConstraint("amount > 0", name="ck_payments_amount"),)

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    invoice_id = db.Column(db.String(36), db.ForeignKey("invoices.id"), nullable=True, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    method = db.Column(_enum(PAYMENT_METHODS, "payment_method"), nullable=False)
    status = db.Column(_enum(PAYMENT_STATUSES, "payment_status"), nullable=False, default="pending")
    payer_user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
    provider_ref = db.Column(db.String(128), index=True)
    raw_payload = db.Column(db.JSON)

    mpesa_transaction = db.relationship("MpesaTransaction", backref="payment", uselist=False)
    bank_proof = db.relationship("BankProof", backref="payment", uselist=False)

    @validates("method")
    def _validate_method(self, key, value):
        return _check_enum("payment_method", value, PAYMENT_METHODS)

    @validates("status")
    def _validate_status(self, key, value):
        return _check_enum("payment_status", value, PAYMENT_STATUSES)

    def __repr__(self):
        return f"<Payment {self.method} {self.amount} {self.status}>"


class MpesaTransaction(db.Model):
    __tablename__ = "mpesa_transactions"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    payment_id = db.Column(db.String(36), db.ForeignKey("payments.id"), nullable=True, unique=True)
    phone = db.Column(db.String(32), nullable=False)
    mpesa_receipt_no = db.Column(db.String(32), nullable=False, unique=True)
    transaction_date = db.Column(db.DateTime, nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)


class BankProof(db.Model):
    __tablename__ = "bank_proofs"

    VERIFICATION_FIELDS = ("verified_by", "verified_at")

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    payment_id = db.Column(db.String(36), db.ForeignKey("payments.id"), nullable=True, unique=True)
    bank_ref = db.Column(db.String(64), nullable=False)
    file_url = db.Column(db.String(512), nullable=False)
    verified_by = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
    verified_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    @property
    def is_verified(self) -> bool:
        return bool(self.verified_by and self.verified_at)


class ScholarshipAdjustment(db.Model):
    __tablename__ = "scholarships_adjustments"
    __table_args__ = (db.CheckConstraint("amount > 0", name="ck_adjustments_amount"),)

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    student_id = db.Column(db.String(36), db.ForeignKey("students.id"), nullable=False, index=True)
    invoice_id = db.Column(db.String(36), db.ForeignKey("invoices.id"), nullable=True, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    reason = db.Column(db.String(255), nullable=False)
    applied_by = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(db.String(36), nullable=True, index=True)
    action = db.Column(db.String(100), nullable=False, index=True)
    entity = db.Column(db.String(64), nullable=False)
    entity_id = db.Column(db.String(36), nullable=True, index=True)
    data = db.Column(db.JSON)
    timestamp = db.Column(db.DateTime, default=utcnow, nullable=False)


@event.listens_for(AuditLog, "before_update")
@event.listens_for(AuditLog, "before_delete")
def _audit_rows_are_append_only(mapper, connection, target):
    raise AppendOnlyError("audit_logs rows cannot be modified or deleted")


@event.listens_for(MpesaTransaction, "before_update")
def _mpesa_rows_are_immutable(mapper, connection, target):
    raise AppendOnlyError("mpesa_transactions rows are immutable once written")


@event.listens_for(BankProof, "before_update")
def _bank_proof_only_verification_changes(mapper, connection, target):
    state = inspect(target)
    for attr in state.mapper.column_attrs:
        if attr.key in BankProof.VERIFICATION_FIELDS:
            continue
        if state.attrs[attr.key].history.has_changes():
            raise AppendOnlyError(f"bank_proofs.{attr.key} is immutable; only verification fields may change")
