from datetime import timedelta
from decimal import Decimal
from io import BytesIO

from conftest import make_invoice
from extensions import db
from models import AuditLog, BankProof, Invoice, Payment
from utils.timezone_helpers import utcnow


def _bank_payment(school, inv, amount, **kw):
    p = Payment(invoice_id=inv.id, amount=Decimal(str(amount)), method="bank_transfer", status="pending", payer_user_id=school.parent.id, **kw)
    db.session.add(p)
    db.session.commit()
    return p


def _upload(client, payment_id, bank_ref="KCB-1001", filename="slip.png"):
    return client.post(
        f"/g/payments/{payment_id}/proof",
        data={"bank_ref": bank_ref, "file": (BytesIO(b"\x89PNG fake"), filename)},
        content_type="multipart/form-data",
    )


def test_proof_upload_rejects_other_file_types(app, guardian_client, school):
    inv = make_invoice(school, 10000)
    p = _bank_payment(school, inv, 10000)
    r = _upload(guardian_client, p.id, filename="slip.exe")
    assert r.status_code == 400
    assert BankProof.query.count() == 0


def test_proof_upload_only_once(app, guardian_client, school):
    inv = make_invoice(school, 10000)
    p = _bank_payment(school, inv, 10000)
    assert _upload(guardian_client, p.id).status_code == 201
    assert _upload(guardian_client, p.id).status_code == 409


def test_guardians_cannot_review_proofs(app, guardian_client, school):
    inv = make_invoice(school, 10000)
    p = _bank_payment(school, inv, 10000)
    proof_id = _upload(guardian_client, p.id).get_json()["proof"]["id"]
    r = guardian_client.post(f"/admin/bank-proofs/{proof_id}/verify")
    assert r.status_code == 403
    assert db.session.get(Payment, p.id).status == "pending"


def test_pending_proof_queue(app, guardian_client, bursar_client, school):
    inv = make_invoice(school, 10000)
    p = _bank_payment(school, inv, 4000)
    _upload(guardian_client, p.id)
    r = bursar_client.get("/admin/bank-proofs?status=pending")
    proofs = r.get_json()["proofs"]
    assert len(proofs) == 1
    assert proofs[0]["payment"]["amount_display"] == "KSh 4,000.00"
    assert proofs[0]["verified"] is False
    assert bursar_client.get("/admin/bank-proofs?status=weird").status_code == 400


def test_reject_proof_fails_payment(app, guardian_client, bursar_client, school):
    inv = make_invoice(school, 10000)
    p = _bank_payment(school, inv, 10000)
    proof_id = _upload(guardian_client, p.id).get_json()["proof"]["id"]
    r = bursar_client.post(f"/admin/bank-proofs/{proof_id}/reject", json={"reason": "Slip is unreadable"})
    assert r.status_code == 200
    assert r.get_json()["payment_status"] == "failed"
    assert db.session.get(Invoice, inv.id).paid_amount == Decimal("0.00")
    assert AuditLog.query.filter_by(entity_id=proof_id, action="bank_proof.rejected").count() == 1
    assert bursar_client.get("/admin/bank-proofs").get_json()["proofs"] == []


def test_verifying_twice_does_not_double_credit(app, guardian_client, bursar_client, school):
    inv = make_invoice(school, 10000)
    p = _bank_payment(school, inv, 3000)
    proof_id = _upload(guardian_client, p.id).get_json()["proof"]["id"]
    bursar_client.post(f"/admin/bank-proofs/{proof_id}/verify")
    r = bursar_client.post(f"/admin/bank-proofs/{proof_id}/verify")
    assert r.get_json()["already_completed"] is True
    assert db.session.get(Invoice, inv.id).paid_amount == Decimal("3000.00")


def test_adjustment_endpoint(app, guardian_client, bursar_client, school):
    inv = make_invoice(school, 10000, paid=4000)
    r = guardian_client.post(f"/admin/invoices/{inv.id}/adjustments", json={"amount": "1000", "reason": "Bursary"})
    assert r.status_code == 403

    r = bursar_client.post(f"/admin/invoices/{inv.id}/adjustments", json={"amount": "6000", "reason": "Full scholarship"})
    assert r.status_code == 201
    assert r.get_json()["invoice_status"] == "paid"

    detail = guardian_client.get(f"/g/invoices/{inv.id}").get_json()["invoice"]
    assert detail["balance_due"] == 0.0
    assert detail["can_pay"] is False
    assert detail["adjustments"][0]["reason"] == "Full scholarship"


def test_adjustment_endpoint_validates(app, bursar_client, school):
    inv = make_invoice(school, 10000)
    r = bursar_client.post(f"/admin/invoices/{inv.id}/adjustments", json={"amount": "abc", "reason": "x"})
    assert r.status_code == 400
    assert r.get_json()["error"] == "Amount must be a number"
    r = bursar_client.post(f"/admin/invoices/{inv.id}/adjustments", json={"amount": "100", "reason": ""})
    assert r.status_code == 400


def test_sweep_endpoint(app, bursar_client, school):
    inv = make_invoice(school, 10000, due_in_days=-3)
    stale = Payment(invoice_id=inv.id, amount=Decimal("500"), method="mpesa", status="pending", provider_ref="mpesa-ref-x", created_at=utcnow() - timedelta(hours=1))
    db.session.add(stale)
    db.session.commit()
    r = bursar_client.post("/admin/sweep")
    body = r.get_json()
    assert body["payments"]["failed"] == 1
    assert body["overdue_marked"] == 1
    assert db.session.get(Invoice, inv.id).status == "overdue"


def test_audit_trail_endpoint(app, guardian_client, bursar_client, school):
    inv = make_invoice(school, 10000)
    p = _bank_payment(school, inv, 1000)
    _upload(guardian_client, p.id)
    r = bursar_client.get("/admin/audit?entity=bank_proofs")
    actions = [row["action"] for row in r.get_json()["logs"]]
    assert actions == ["bank_proof.uploaded"]
    assert guardian_client.get("/admin/audit").status_code == 403


def test_transfer_within_its_window_survives_the_sweep(app, guardian_client, bursar_client, school):
    inv = make_invoice(school, 10000)
    p = _bank_payment(school, inv, 10000, created_at=utcnow() - timedelta(hours=6))
    assert bursar_client.post("/admin/sweep").get_json()["payments"]["failed"] == 0
    assert _upload(guardian_client, p.id).status_code == 201
    assert db.session.get(Payment, p.id).status == "pending"


def test_late_slip_reopens_an_expired_transfer(app, guardian_client, bursar_client, school):
    inv = make_invoice(school, 10000)
    p = _bank_payment(school, inv, 10000, created_at=utcnow() - timedelta(days=8))
    assert bursar_client.post("/admin/sweep").get_json()["payments"]["failed"] == 1
    assert db.session.get(Payment, p.id).status == "failed"

    r = _upload(guardian_client, p.id)
    assert r.status_code == 201
    assert db.session.get(Payment, p.id).status == "pending"
    assert AuditLog.query.filter_by(entity_id=p.id, action="payment.reopened").count() == 1

    proof_id = r.get_json()["proof"]["id"]
    assert bursar_client.post(f"/admin/bank-proofs/{proof_id}/verify").status_code == 200
    assert db.session.get(Invoice, inv.id).status == "paid"


def test_rejected_transfer_is_not_reopened(app, guardian_client, bursar_client, school):
    inv = make_invoice(school, 10000)
    p = _bank_payment(school, inv, 10000)
    proof_id = _upload(guardian_client, p.id).get_json()["proof"]["id"]
    bursar_client.post(f"/admin/bank-proofs/{proof_id}/reject", json={"reason": "Wrong account"})
    assert _upload(guardian_client, p.id, bank_ref="KCB-2002").status_code == 400
    assert db.session.get(Payment, p.id).status == "failed"
