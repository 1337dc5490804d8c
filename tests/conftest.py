import os
import sys
from datetime import date, timedelta
from decimal import Decimal
from types import SimpleNamespace

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import pytest

from app import create_app
from extensions import db
from models import FeeItem, Guardian, SchoolClass, Student, Term, User
from utils.invoices import create_invoice, derive_status
from utils.providers import PENDING, PaymentProvider, ProviderResult
from utils.roles import grant_role
from utils.security import hash_password

GUARDIAN_PASSWORD = "parent-pass-123"


class FakeProvider(PaymentProvider):
    """Records calls; answers polls with ``status`` and can be told to raise."""

    def __init__(self, method, status=PENDING, error=None):
        self.method = method
        self.status = status
        self.error = error
        self.calls = []
        self.polls = []

    def initiate(self, amount, destination, reference, description=""):
        self.calls.append({"amount": amount, "destination": destination, "reference": reference})
        if self.error is not None:
            raise self.error
        ref = f"{self.method}-ref-{len(self.calls)}"
        redirect_url = f"https://checkout.test/{ref}" if self.method == "stripe" else None
        return ProviderResult(reference=ref, redirect_url=redirect_url, message="Accepted", raw={"ref": ref})

    def poll_status(self, reference):
        self.polls.append(reference)
        if isinstance(self.status, Exception):
            raise self.status
        return self.status


def base_config(tmp_path, **extra):
    cfg = {
        "TESTING": True,
        "SECRET_KEY": "test-secret",
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "SESSION_COOKIE_SECURE": False,
        "TRUST_PROXY": False,
        "RATELIMIT_ENABLED": False,
        "PAYMENTS_STUB": True,
        "AUTO_CREATE_TABLES": True,
        "ENABLE_SCHEDULER": False,
        "MAIL_DEFAULT_SENDER": "accounts@kayatiwi.test",
        "STRIPE_WEBHOOK_SECRET": "whsec_test",
        "PAYMENT_PROOF_UPLOADS_DIR": str(tmp_path / "proofs"),
    }
    cfg.update(extra)
    return cfg


@pytest.fixture
def app(tmp_path):
    app = create_app(base_config(tmp_path))
    app.extensions["payment_providers"] = {
        "mpesa": FakeProvider("mpesa"),
        "stripe": FakeProvider("stripe"),
    }
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def providers(app):
    return app.extensions["payment_providers"]


@pytest.fixture
def client(app):
    return app.test_client()


def seed_school():
    """One guardian with one student, an active term and a bursar."""
    parent = User(email="wanjiku@example.com", password_hash=hash_password(GUARDIAN_PASSWORD), full_name="Wanjiku Kamau", phone="0712345678")
    bursar = User(email="bursar@kayatiwi.test", password_hash=hash_password("bursar-pass"), full_name="Peter Otieno")
    db.session.add_all([parent, bursar])
    db.session.flush()
    grant_role(parent.id, "parent")
    grant_role(bursar.id, "bursar")

    guardian = Guardian(user_id=parent.id, name="Wanjiku Kamau", phone="0712345678", email="wanjiku@example.com")
    form3 = SchoolClass(name="Form 3 East", level=3, year=2026)
    term = Term(name="Term 1 2026", start_date=date(2026, 1, 5), end_date=date(2026, 4, 3), active=True)
    tuition = FeeItem(code="TUI", title="Tuition", category="tuition", default_amount=Decimal("7000"))
    boarding = FeeItem(code="BRD", title="Boarding", category="boarding", default_amount=Decimal("3000"))
    db.session.add_all([guardian, form3, term, tuition, boarding])
    db.session.flush()
    student = Student(
        admission_no="KSS-1042",
        first_name="Amani",
        last_name="Kamau",
        boarding_status="boarding",
        class_id=form3.id,
        guardian_id=guardian.id,
    )
    db.session.add(student)
    db.session.commit()
    return SimpleNamespace(
        parent=parent,
        bursar=bursar,
        guardian=guardian,
        student=student,
        term=term,
        fee_items=(tuition, boarding),
    )


_invoice_counter = {"n": 0}


def make_invoice(school, total, paid=0, status=None, due_in_days=30, invoice_no=None):
    _invoice_counter["n"] += 1
    total = Decimal(str(total))
    tuition, boarding = school.fee_items
    lines = [(tuition, "Tuition", total)]
    if total > 1000:
        lines = [(tuition, "Tuition", total - 1000), (boarding, "Boarding", Decimal("1000"))]
    inv = create_invoice(
        invoice_no=invoice_no or f"INV-{_invoice_counter['n']:05d}",
        student=school.student,
        term=school.term,
        due_date=date.today() + timedelta(days=due_in_days),
        lines=lines,
    )
    inv.paid_amount = Decimal(str(paid))
    inv.status = status or derive_status(total, inv.paid_amount, "issued")
    db.session.commit()
    return inv


@pytest.fixture
def school(app):
    return seed_school()


def login_as(client, user):
    with client.session_transaction() as sess:
        sess["user_id"] = user.id
        sess["email"] = user.email


@pytest.fixture
def guardian_client(client, school):
    login_as(client, school.parent)
    return client


@pytest.fixture
def bursar_client(app, school):
    c = app.test_client()
    login_as(c, school.bursar)
    return c


def stk_callback(checkout_id, amount, receipt="QKL1X2Y3Z4", code=0):
    """Daraja STK callback body as posted to /mpesa/callback."""
    stk = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_id,
        "ResultCode": code,
        "ResultDesc": "The service request is processed successfully." if code == 0 else "Request cancelled by user",
    }
    if code == 0:
        stk["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20260214103015},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": stk}}
