from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request, url_for

from extensions import db, limiter
from models import Invoice, Payment
from utils.errors import IntegrityViolation, NotFoundError, PortalError
from utils.invoices import balance_due, serialize_invoice, summarize
from utils.money import format_kes
from utils.payment_flow import DETAILS, clear_flow, load_flow, save_flow
from utils.payments import bank_details, record_bank_proof, refresh_payment_status
from utils.roles import can_read_payment, guardian_for_user, visible_invoices
from utils.session import login_required
from utils.timezone_helpers import east_africa_today

guardian_bp = Blueprint("guardian", __name__, url_prefix="/g")


def _load_invoice(portal, invoice_id: str) -> Invoice:
    invoice = visible_invoices(portal.current_user_id).filter(Invoice.id == invoice_id).first()
    if invoice is None:
        raise NotFoundError("Invoice not found")
    return invoice


def _load_payment(portal, payment_id: str) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if payment is None or not can_read_payment(portal.current_user_id, payment):
        raise NotFoundError("Payment not found")
    return payment


def _payable(invoice: Invoice) -> Invoice:
    if not serialize_invoice(invoice)["can_pay"]:
        raise IntegrityViolation(f"Invoice {invoice.invoice_no} has nothing to pay")
    return invoice


def _flow_payload(flow) -> dict:
    data = flow.to_dict()
    data["amount_display"] = format_kes(flow.amount_value)
    if flow.state == DETAILS and flow.method == "bank_transfer":
        data["bank"] = bank_details()
    return data


def _payment_payload(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "invoice_id": payment.invoice_id,
        "method": payment.method,
        "status": payment.status,
        "amount": float(payment.amount),
        "amount_display": format_kes(payment.amount),
        "provider_ref": payment.provider_ref,
        "has_proof": payment.bank_proof is not None,
    }


@guardian_bp.route("/dashboard", methods=["GET"])
@login_required
def dashboard(portal):
    guardian = guardian_for_user(portal.current_user_id)
    if guardian is None:
        # Signed in but no guardian record linked yet
        current_app.logger.info("No guardian profile for user %s", portal.current_user_id)
        return jsonify({
            "ok": True,
            "has_guardian": False,
            "guardian": None,
            "students": [],
            "invoices": [],
            "summary": summarize([], east_africa_today()).as_dict(),
        })
    invoices = (
        Invoice.query.filter(Invoice.guardian_id == guardian.id)
        .order_by(Invoice.due_date.desc())
        .all()
    )
    students = [
        {
            "id": s.id,
            "admission_no": s.admission_no,
            "name": s.full_name,
            "boarding_status": s.boarding_status,
            "class": s.school_class.name if s.school_class else None,
        }
        for s in guardian.students
    ]
    return jsonify({
        "ok": True,
        "has_guardian": True,
        "guardian": {"id": guardian.id, "name": guardian.name, "phone": guardian.phone, "email": guardian.email},
        "students": students,
        "invoices": [serialize_invoice(inv) for inv in invoices],
        "summary": summarize(invoices, east_africa_today()).as_dict(),
    })


@guardian_bp.route("/invoices/<invoice_id>", methods=["GET"])
@login_required
def invoice_detail(portal, invoice_id):
    invoice = _load_invoice(portal, invoice_id)
    return jsonify({"ok": True, "invoice": serialize_invoice(invoice, with_detail=True)})


@guardian_bp.route("/invoices/<invoice_id>/receipt", methods=["GET"])
@login_required
def invoice_receipt(portal, invoice_id):
    invoice = _load_invoice(portal, invoice_id)
    if invoice.status != "paid":
        return jsonify({"ok": False, "error": "A receipt is available once the invoice is fully paid"}), 409
    return jsonify({"ok": False, "error": "Receipt download is not available yet"}), 501


# -----------------------------
# Pay dialog
# -----------------------------


@guardian_bp.route("/invoices/<invoice_id>/pay", methods=["GET"])
@login_required
def pay_state(portal, invoice_id):
    invoice = _load_invoice(portal, invoice_id)
    flow = load_flow(invoice.id, balance_due(invoice))
    return jsonify({"ok": True, "flow": _flow_payload(flow)})


@guardian_bp.route("/invoices/<invoice_id>/pay/select", methods=["POST"])
@login_required
def pay_select(portal, invoice_id):
    invoice = _payable(_load_invoice(portal, invoice_id))
    data = request.get_json(silent=True) or request.form
    flow = load_flow(invoice.id, balance_due(invoice))
    flow.select_method(data.get("method"))
    save_flow(flow)
    return jsonify({"ok": True, "flow": _flow_payload(flow)})


@guardian_bp.route("/invoices/<invoice_id>/pay/back", methods=["POST"])
@login_required
def pay_back(portal, invoice_id):
    invoice = _load_invoice(portal, invoice_id)
    flow = load_flow(invoice.id, balance_due(invoice))
    flow.back()
    save_flow(flow)
    return jsonify({"ok": True, "flow": _flow_payload(flow)})


@guardian_bp.route("/invoices/<invoice_id>/pay/submit", methods=["POST"])
@limiter.limit("3 per minute")
@login_required
def pay_submit(portal, invoice_id):
    invoice = _payable(_load_invoice(portal, invoice_id))
    data = request.get_json(silent=True) or request.form
    flow = load_flow(invoice.id, balance_due(invoice))
    return_url = url_for("guardian.invoice_detail", invoice_id=invoice.id, _external=True)
    try:
        flow.submit(dict(data), invoice=invoice, payer_user_id=portal.current_user_id, return_url=return_url)
    except PortalError as e:
        save_flow(flow)
        return jsonify({"ok": False, "error": e.message, "flow": _flow_payload(flow)}), e.status_code
    save_flow(flow)
    return jsonify({"ok": True, "flow": _flow_payload(flow)})


@guardian_bp.route("/invoices/<invoice_id>/pay/close", methods=["POST"])
@login_required
def pay_close(portal, invoice_id):
    invoice = _load_invoice(portal, invoice_id)
    flow = load_flow(invoice.id, balance_due(invoice)).close()
    clear_flow(invoice.id)
    return jsonify({"ok": True, "flow": _flow_payload(flow)})


# -----------------------------
# Payments
# -----------------------------


@guardian_bp.route("/payments/<payment_id>/status", methods=["GET"])
@login_required
def payment_status(portal, payment_id):
    payment = _load_payment(portal, payment_id)
    refresh_payment_status(payment)
    payment = db.session.get(Payment, payment_id)
    return jsonify({"ok": True, "payment": _payment_payload(payment)})


@guardian_bp.route("/payments/<payment_id>/proof", methods=["POST"])
@limiter.limit("5 per minute")
@login_required
def upload_proof(portal, payment_id):
    payment = _load_payment(portal, payment_id)
    proof = record_bank_proof(
        payment,
        request.form.get("bank_ref", ""),
        request.files.get("file"),
        user_id=portal.current_user_id,
    )
    return jsonify({"ok": True, "proof": {"id": proof.id, "bank_ref": proof.bank_ref, "verified": proof.is_verified}}), 201
