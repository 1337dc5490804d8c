from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from extensions import db
from models import BankProof, Payment
from utils.audit import fetch_audit_logs
from utils.errors import ValidationError
from utils.invoices import mark_overdue_invoices
from utils.money import format_kes
from utils.payments import pending_bank_proofs, reject_bank_proof, verify_bank_proof
from utils.reconcile import apply_adjustment, expire_stale_payments
from utils.roles import ADMIN_ROLES, READ_ALL_ROLES
from utils.session import roles_required
from utils.timezone_helpers import east_africa_today

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


def _proof_payload(proof: BankProof) -> dict:
    payment = proof.payment
    return {
        "id": proof.id,
        "bank_ref": proof.bank_ref,
        "file_url": proof.file_url,
        "verified": proof.is_verified,
        "verified_by": proof.verified_by,
        "verified_at": proof.verified_at.isoformat() if proof.verified_at else None,
        "payment": {
            "id": payment.id,
            "status": payment.status,
            "amount": float(payment.amount),
            "amount_display": format_kes(payment.amount),
            "invoice_no": payment.invoice.invoice_no if payment.invoice else None,
        } if payment else None,
    }


@admin_bp.route("/bank-proofs", methods=["GET"])
@roles_required(*ADMIN_ROLES)
def bank_proofs(portal):
    status = (request.args.get("status") or "pending").lower()
    if status == "pending":
        proofs = pending_bank_proofs()
    elif status == "all":
        proofs = BankProof.query.order_by(BankProof.created_at.desc()).all()
    else:
        raise ValidationError("status must be 'pending' or 'all'")
    return jsonify({"ok": True, "proofs": [_proof_payload(p) for p in proofs]})


@admin_bp.route("/bank-proofs/<proof_id>/verify", methods=["POST"])
@roles_required(*ADMIN_ROLES)
def verify_proof(portal, proof_id):
    result = verify_bank_proof(proof_id, actor_id=portal.current_user_id)
    proof = db.session.get(BankProof, proof_id)
    return jsonify({
        "ok": True,
        "proof": _proof_payload(proof),
        "credited": float(result.credited),
        "excess": float(result.excess),
        "already_completed": result.already_completed,
    })


@admin_bp.route("/bank-proofs/<proof_id>/reject", methods=["POST"])
@roles_required(*ADMIN_ROLES)
def reject_proof(portal, proof_id):
    data = request.get_json(silent=True) or request.form
    payment = reject_bank_proof(proof_id, data.get("reason") or "", actor_id=portal.current_user_id)
    return jsonify({"ok": True, "payment_status": db.session.get(Payment, payment.id).status})


@admin_bp.route("/invoices/<invoice_id>/adjustments", methods=["POST"])
@roles_required(*ADMIN_ROLES)
def add_adjustment(portal, invoice_id):
    data = request.get_json(silent=True) or request.form
    adj = apply_adjustment(invoice_id, data.get("amount"), data.get("reason") or "", actor_id=portal.current_user_id)
    invoice = adj.invoice
    return jsonify({
        "ok": True,
        "adjustment": {"id": adj.id, "amount": float(adj.amount), "reason": adj.reason},
        "invoice_status": invoice.status if invoice else None,
    }), 201


@admin_bp.route("/sweep", methods=["POST"])
@roles_required(*ADMIN_ROLES)
def sweep(portal):
    stats = expire_stale_payments()
    overdue = mark_overdue_invoices(east_africa_today())
    db.session.commit()
    current_app.logger.info("Manual sweep by %s: %s, %d overdue", portal.current_user_id, stats, overdue)
    return jsonify({"ok": True, "payments": stats, "overdue_marked": overdue})


@admin_bp.route("/audit", methods=["GET"])
@roles_required(*READ_ALL_ROLES)
def audit_trail(portal):
    try:
        limit = min(int(request.args.get("limit", 50)), 500)
    except ValueError:
        raise ValidationError("limit must be a number")
    rows = fetch_audit_logs(request.args.get("entity"), request.args.get("entity_id"), limit)
    return jsonify({
        "ok": True,
        "logs": [
            {
                "id": r.id,
                "user_id": r.user_id,
                "action": r.action,
                "entity": r.entity,
                "entity_id": r.entity_id,
                "data": r.data,
                "timestamp": r.timestamp.isoformat(),
            }
            for r in rows
        ],
    })
