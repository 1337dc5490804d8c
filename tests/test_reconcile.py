import threading
import time
from datetime import date, timedelta
from decimal import Decimal

import pytest

from app import create_app
from conftest import base_config, make_invoice, seed_school
from extensions import db, mail
from models import AuditLog, Invoice, Payment, ScholarshipAdjustment
from utils.errors import AuthorizationError, ReconciliationError, ValidationError
from utils.invoices import mark_overdue_invoices
from utils.providers import COMPLETED, FAILED
from utils.reconcile import apply_adjustment, complete_payment, expire_stale_payments, fail_payment
from utils.timezone_helpers import utcnow


def _payment(invoice, amount, method="mpesa", status="pending", **kw):
    p = Payment(invoice_id=invoice.id if invoice else None, amount=Decimal(str(amount)), method=method, status=status, **kw)
    db.session.add(p)
    db.session.commit()
    return p


def _actions(entity_id):
    return [a.action for a in AuditLog.query.filter_by(entity_id=entity_id).all()]


def test_completion_credits_invoice_and_recomputes_status(app, school):
    inv = make_invoice(school, 10000)
    p = _payment(inv, 4000)
    result = complete_payment(p.id)
    assert result.credited == Decimal("4000.00")
    assert result.excess == Decimal("0.00")
    inv = db.session.get(Invoice, inv.id)
    assert inv.paid_amount == Decimal("4000.00")
    assert inv.status == "partial"
    assert inv.version == 1
    assert db.session.get(Payment, p.id).status == "completed"
    assert "payment.completed" in _actions(p.id)

    second = _payment(inv, 6000)
    complete_payment(second.id)
    inv = db.session.get(Invoice, inv.id)
    assert inv.paid_amount == Decimal("10000.00")
    assert inv.status == "paid"


def test_completion_is_idempotent(app, school):
    inv = make_invoice(school, 10000)
    p = _payment(inv, 2500)
    complete_payment(p.id)
    again = complete_payment(p.id)
    assert again.already_completed
    assert db.session.get(Invoice, inv.id).paid_amount == Decimal("2500.00")
    assert _actions(p.id).count("payment.completed") == 1


def test_overpayment_is_clamped_and_recorded(app, school):
    inv = make_invoice(school, 5000, paid=2000)
    p = _payment(inv, 4000)
    result = complete_payment(p.id)
    assert result.credited == Decimal("3000.00")
    assert result.excess == Decimal("1000.00")
    inv = db.session.get(Invoice, inv.id)
    assert inv.paid_amount == inv.total_amount
    assert inv.status == "paid"
    log = AuditLog.query.filter_by(entity_id=p.id, action="payment.overpayment").one()
    assert log.data["excess"] == 1000.0


def test_confirmed_amount_overrides_requested(app, school):
    inv = make_invoice(school, 10000)
    p = _payment(inv, 10000)
    complete_payment(p.id, confirmed_amount="7500")
    inv = db.session.get(Invoice, inv.id)
    assert inv.paid_amount == Decimal("7500.00")
    assert inv.status == "partial"


def test_unallocated_payment_completes_without_invoice(app, school):
    p = _payment(None, 1500)
    result = complete_payment(p.id)
    assert result.invoice is None
    assert "payment.unallocated" in _actions(p.id)


def test_cancelled_invoice_rejects_completion_atomically(app, school):
    inv = make_invoice(school, 10000, status="cancelled")
    p = _payment(inv, 1000)
    with pytest.raises(ReconciliationError):
        complete_payment(p.id)
    assert db.session.get(Payment, p.id).status == "pending"
    assert db.session.get(Invoice, inv.id).paid_amount == Decimal("0.00")
    assert AuditLog.query.filter_by(entity_id=p.id).count() == 0


def test_refunded_payment_cannot_complete(app, school):
    inv = make_invoice(school, 10000)
    p = _payment(inv, 1000, status="refunded")
    with pytest.raises(ReconciliationError):
        complete_payment(p.id)


def test_late_success_after_failure_is_still_credited(app, school):
    inv = make_invoice(school, 10000)
    p = _payment(inv, 10000)
    fail_payment(p.id, "Expired while pending")
    assert db.session.get(Payment, p.id).status == "failed"
    complete_payment(p.id)
    assert db.session.get(Invoice, inv.id).status == "paid"
    assert "payment.late_completion" in _actions(p.id)


def test_fail_payment_leaves_completed_alone(app, school):
    inv = make_invoice(school, 10000)
    p = _payment(inv, 1000)
    complete_payment(p.id)
    fail_payment(p.id, "too late")
    assert db.session.get(Payment, p.id).status == "completed"


def test_receipt_email_sent_on_completion(app, school):
    inv = make_invoice(school, 10000)
    p = _payment(inv, 1000)
    with mail.record_messages() as outbox:
        complete_payment(p.id)
    assert len(outbox) == 1
    assert outbox[0].recipients == ["wanjiku@example.com"]
    assert "KSh 1,000.00" in outbox[0].body


def test_apply_adjustment_requires_admin(app, school):
    inv = make_invoice(school, 10000)
    with pytest.raises(AuthorizationError):
        apply_adjustment(inv.id, 1000, "Bursary", actor_id=school.parent.id)


def test_apply_adjustment_reduces_balance(app, school):
    inv = make_invoice(school, 10000, paid=6000)
    adj = apply_adjustment(inv.id, 4000, "Sports scholarship", actor_id=school.bursar.id)
    assert adj.applied_by == school.bursar.id
    inv = db.session.get(Invoice, inv.id)
    assert inv.status == "paid"
    assert inv.total_amount == Decimal("10000.00")
    assert "invoice.adjusted" in _actions(inv.id)


def test_apply_adjustment_cannot_exceed_balance(app, school):
    inv = make_invoice(school, 10000, paid=8000)
    with pytest.raises(ValidationError):
        apply_adjustment(inv.id, 2500, "Too generous", actor_id=school.bursar.id)
    with pytest.raises(ValidationError):
        apply_adjustment(inv.id, 0, "Nothing", actor_id=school.bursar.id)
    assert ScholarshipAdjustment.query.count() == 0


def test_apply_adjustment_parses_the_posted_amount(app, school):
    inv = make_invoice(school, 10000)
    for junk in ("abc", "NaN", ""):
        with pytest.raises(ValidationError, match="must be a number"):
            apply_adjustment(inv.id, junk, "Bursary", actor_id=school.bursar.id)
    adj = apply_adjustment(inv.id, "1,000", "Bursary", actor_id=school.bursar.id)
    assert adj.amount == Decimal("1000.00")
    assert ScholarshipAdjustment.query.count() == 1


def test_adjustment_limits_later_credit(app, school):
    inv = make_invoice(school, 10000)
    apply_adjustment(inv.id, 3000, "Bursary", actor_id=school.bursar.id)
    p = _payment(inv, 10000)
    result = complete_payment(p.id)
    assert result.credited == Decimal("7000.00")
    assert result.excess == Decimal("3000.00")
    assert db.session.get(Invoice, inv.id).status == "paid"


def test_expire_stale_payments(app, school, providers):
    inv = make_invoice(school, 10000)
    old = utcnow() - timedelta(hours=2)
    unanswered = _payment(inv, 1000, provider_ref="mpesa-ref-old", created_at=old)
    succeeded = _payment(inv, 2000, method="stripe", provider_ref="cs_test_1", created_at=old)
    fresh = _payment(inv, 500, provider_ref="mpesa-ref-new")
    bank_no_proof = _payment(inv, 700, method="bank_transfer", created_at=old)
    abandoned = _payment(inv, 800, method="bank_transfer", created_at=utcnow() - timedelta(days=8))
    providers["stripe"].status = COMPLETED
    providers["mpesa"].status = FAILED

    stats = expire_stale_payments()

    assert stats == {"checked": 3, "completed": 1, "failed": 2, "left_pending": 0}
    assert db.session.get(Payment, unanswered.id).status == "failed"
    assert db.session.get(Payment, succeeded.id).status == "completed"
    assert db.session.get(Payment, fresh.id).status == "pending"
    # bank transfers get days, not minutes, to receive their slip
    assert db.session.get(Payment, bank_no_proof.id).status == "pending"
    assert db.session.get(Payment, abandoned.id).status == "failed"
    assert db.session.get(Invoice, inv.id).paid_amount == Decimal("2000.00")


def test_concurrent_completions_do_not_lose_updates(tmp_path):
    """Two threads complete two payments on one invoice at the same moment."""
    cfg = base_config(
        tmp_path,
        SQLALCHEMY_DATABASE_URI=f"sqlite:///{tmp_path / 'concurrency.db'}",
        SQLALCHEMY_ENGINE_OPTIONS={"connect_args": {"timeout": 30, "check_same_thread": False}},
        RECONCILE_MAX_RETRIES=10,
    )
    capp = create_app(cfg)
    with capp.app_context():
        school = seed_school()
        inv = make_invoice(school, 10000)
        first = _payment(inv, 3000)
        second = _payment(inv, 3000)
        invoice_id, payment_ids = inv.id, [first.id, second.id]

    barrier = threading.Barrier(2)
    errors = []

    def worker(pid):
        with capp.app_context():
            try:
                barrier.wait(timeout=10)
                complete_payment(pid)
            except Exception as e:
                errors.append(e)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker, args=(pid,)) for pid in payment_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert errors == []
    with capp.app_context():
        inv = db.session.get(Invoice, invoice_id)
        assert inv.paid_amount == Decimal("6000.00")
        assert inv.status == "partial"
        assert inv.version == 2
        assert Payment.query.filter_by(status="completed").count() == 2
        db.session.remove()
        db.drop_all()


def test_overdue_sweep_does_not_overwrite_a_concurrent_completion(tmp_path):
    """The sweep has written but not committed when a payment completes."""
    cfg = base_config(
        tmp_path,
        SQLALCHEMY_DATABASE_URI=f"sqlite:///{tmp_path / 'overdue_race.db'}",
        SQLALCHEMY_ENGINE_OPTIONS={"connect_args": {"timeout": 30, "check_same_thread": False}},
        RECONCILE_MAX_RETRIES=10,
    )
    capp = create_app(cfg)
    with capp.app_context():
        school = seed_school()
        inv = make_invoice(school, 10000, due_in_days=-3)
        p = _payment(inv, 10000)
        invoice_id, payment_id = inv.id, p.id

    swept = threading.Event()
    errors = []

    def sweeper():
        with capp.app_context():
            try:
                mark_overdue_invoices(date.today())
                swept.set()
                time.sleep(0.3)
                db.session.commit()
            except Exception as e:
                errors.append(e)
                swept.set()
            finally:
                db.session.remove()

    def completer():
        with capp.app_context():
            try:
                swept.wait(timeout=10)
                complete_payment(payment_id)
            except Exception as e:
                errors.append(e)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=sweeper), threading.Thread(target=completer)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert errors == []
    with capp.app_context():
        inv = db.session.get(Invoice, invoice_id)
        assert inv.paid_amount == Decimal("10000.00")
        assert inv.status == "paid"
        assert inv.version == 2
        db.session.remove()
        db.drop_all()
