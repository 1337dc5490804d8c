from __future__ import annotations

import uuid
from pathlib import Path

from flask import current_app
from werkzeug.utils import secure_filename

from utils.errors import ValidationError
from utils.timezone_helpers import utcnow

ALLOWED_EXTENSIONS = {".png", ".jpg", ".jpeg", ".pdf"}


def allowed_proof_file(filename: str) -> bool:
    if not filename:
        return False
    return Path(filename).suffix.lower() in ALLOWED_EXTENSIONS


def _proof_upload_paths(payment_id: str) -> tuple[Path, str]:
    relative = current_app.config.get("PAYMENT_PROOF_UPLOADS_DIR") or "uploads/payment_proofs"
    root = Path(relative)
    if not root.is_absolute():
        root = Path(current_app.instance_path) / relative
    target = root / payment_id
    target.mkdir(parents=True, exist_ok=True)
    return target, relative


def save_payment_proof_file(file, payment_id: str) -> str:
    """Store an uploaded deposit slip and return its path relative to the upload root."""
    if file is None or not allowed_proof_file(file.filename or ""):
        raise ValidationError("Upload a PNG, JPG or PDF of the deposit slip")
    target, relative = _proof_upload_paths(payment_id)
    ext = Path(file.filename).suffix.lower()
    filename = secure_filename(f"{utcnow().strftime('%Y%m%d%H%M%S')}_{uuid.uuid4().hex}{ext}")
    file.save(target / filename)
    return (Path(relative) / payment_id / filename).as_posix()
