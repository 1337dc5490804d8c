from __future__ import annotations

from typing import Optional

from werkzeug.security import check_password_hash, generate_password_hash


def hash_password(plain: str, method: str = "pbkdf2:sha256", salt_length: int = 16) -> str:
    plain = (plain or "").strip()
    if not plain:
        raise ValueError("Password cannot be empty")
    return generate_password_hash(plain, method=method, salt_length=salt_length)


def verify_password(stored_hash: Optional[str], candidate: str) -> bool:
    """Check a candidate against a werkzeug hash; unhashed values never match."""
    if not stored_hash or ":" not in stored_hash:
        return False
    return check_password_hash(stored_hash, (candidate or "").strip())
