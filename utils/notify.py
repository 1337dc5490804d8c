from __future__ import annotations

from flask import current_app
from flask_mail import Message

from extensions import mail
from utils.money import format_kes
from utils.timezone_helpers import format_east_africa


def _recipient_for(payment) -> str | None:
    invoice = payment.invoice
    if invoice is not None and invoice.guardian is not None and invoice.guardian.email:
        return invoice.guardian.email
    return None


def send_payment_receipt(payment) -> bool:
    """Email the guardian that a payment was received.

    Best effort: a mail failure never undoes a completed payment, it is logged.
    """
    if not current_app.config.get("MAIL_DEFAULT_SENDER"):
        current_app.logger.debug("MAIL_DEFAULT_SENDER not set; skipping receipt for payment %s", payment.id)
        return False
    to = _recipient_for(payment)
    if not to:
        return False
    invoice = payment.invoice
    school = current_app.config.get("SCHOOL_NAME", "School")
    student = invoice.student.full_name if invoice.student else ""
    subject = f"{school}: payment received for {invoice.invoice_no}"
    body = "\n".join(
        [
            f"Hello {invoice.guardian.name},",
            "",
            f"We have received {format_kes(payment.amount)} via {payment.method.replace('_', ' ')} "
            f"towards invoice {invoice.invoice_no} ({student}).",
            f"Invoice status: {invoice.status}. Received: {format_east_africa(payment.updated_at)}.",
            "",
            f"Thank you,\n{school}",
        ]
    )
    try:
        mail.send(Message(subject=subject, recipients=[to], body=body))
    except Exception as e:
        current_app.logger.warning("Receipt email for payment %s failed: %s", payment.id, e)
        return False
    return True
