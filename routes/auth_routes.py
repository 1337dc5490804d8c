from flask import Blueprint, current_app, jsonify, request

from extensions import db, limiter
from models import User
from utils.roles import guardian_for_user
from utils.security import verify_password
from utils.session import current_session, login_required

auth_bp = Blueprint('auth', __name__, url_prefix='/auth')


def _principal_payload(portal) -> dict:
    principal = portal.principal
    user = db.session.get(User, principal.user_id)
    guardian = guardian_for_user(principal.user_id)
    return {
        "user_id": principal.user_id,
        "email": principal.email,
        "full_name": user.full_name if user else None,
        "roles": sorted(principal.roles),
        "guardian_id": guardian.id if guardian else None,
    }


@auth_bp.route('/login', methods=['POST'])
@limiter.limit('10 per minute', methods=['POST'])
def login():
    """Email + password sign-in; accepts JSON or a form post."""
    data = request.get_json(silent=True) or request.form
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''
    if not email or not password:
        return jsonify({"ok": False, "error": "Email and password are required"}), 400

    user = User.query.filter_by(email=email).first()
    if not user or not verify_password(user.password_hash, password):
        current_app.logger.info("Failed login for %s", email)
        return jsonify({"ok": False, "error": "Invalid email or password"}), 401

    portal = current_session()
    portal.sign_in(user)
    return jsonify({"ok": True, "user": _principal_payload(portal)})


@auth_bp.route('/logout', methods=['POST'])
def logout():
    current_session().sign_out()
    return jsonify({"ok": True})


@auth_bp.route('/me', methods=['GET'])
@login_required
def me(portal):
    return jsonify({"ok": True, "user": _principal_payload(portal)})
