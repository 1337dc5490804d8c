from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from utils.payments import handle_card_event
from utils.stripe_checkout import verify_webhook

card_bp = Blueprint("card", __name__, url_prefix="/card")


@card_bp.route("/webhook", methods=["POST"])
def webhook():
    """Hosted-checkout events, authenticated by the Stripe-Signature HMAC."""
    event = verify_webhook(
        request.get_data(),
        request.headers.get("Stripe-Signature", ""),
        current_app.config.get("STRIPE_WEBHOOK_SECRET") or "",
        tolerance=int(current_app.config.get("STRIPE_WEBHOOK_TOLERANCE", 300)),
    )
    current_app.logger.info("Card webhook %s (%s)", event.get("type"), event.get("id"))
    return jsonify({"ok": True, "outcome": handle_card_event(event)})
