from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from utils.errors import PortalError
from utils.payments import handle_mpesa_callback

mpesa_bp = Blueprint("mpesa", __name__, url_prefix="/mpesa")


@mpesa_bp.route("/callback", methods=["POST"])
def callback():
    """Daraja STK push result. Daraja retries anything that is not acknowledged."""
    data = request.get_json(force=True, silent=True) or {}
    stk = (data.get("Body") or {}).get("stkCallback") or {}
    current_app.logger.info(
        "M-Pesa callback %s ResultCode=%s", stk.get("CheckoutRequestID"), stk.get("ResultCode")
    )
    try:
        outcome = handle_mpesa_callback(data)
    except PortalError as e:
        current_app.logger.warning("Rejected M-Pesa callback: %s", e.message)
        return jsonify({"ResultCode": 1, "ResultDesc": e.message}), e.status_code
    return jsonify({"ResultCode": 0, "ResultDesc": "Accepted", "outcome": outcome})
