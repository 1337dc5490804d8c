from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional

from extensions import db
from models import AuditLog


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def log_event(
    action: str,
    entity: str,
    entity_id: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
    user_id: Optional[str] = None,
) -> AuditLog:
    """Append an audit row to the current unit of work.

    The row is committed together with the change it describes, so a rolled
    back operation leaves no audit trail of something that never happened.
    """
    entry = AuditLog(
        user_id=user_id,
        action=action,
        entity=entity,
        entity_id=entity_id,
        data=_jsonable(data or {}),
    )
    db.session.add(entry)
    return entry


def fetch_audit_logs(entity: str | None = None, entity_id: str | None = None, limit: int = 50) -> List[AuditLog]:
    q = AuditLog.query
    if entity:
        q = q.filter(AuditLog.entity == entity)
    if entity_id:
        q = q.filter(AuditLog.entity_id == entity_id)
    return q.order_by(AuditLog.timestamp.desc()).limit(limit).all()
