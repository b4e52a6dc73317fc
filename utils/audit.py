from __future__ import annotations

import logging
from typing import Any, Dict, List

from flask import has_request_context, session

from extensions import db
from models import AuditLog

logger = logging.getLogger(__name__)


def log_event(action: str, target: str | None = None, detail: str | None = None) -> AuditLog:
    """Add an audit row to the current session; the caller's commit persists it."""
    user_id = username = user_role = None
    if has_request_context():
        user_id = session.get("user_id")
        username = session.get("username")
        user_role = session.get("role")
    entry = AuditLog(
        user_id=user_id,
        username=username,
        user_role=user_role,
        action=action,
        target=target,
        detail=detail,
    )
    db.session.add(entry)
    logger.debug("audit %s target=%s", action, target)
    return entry


def fetch_audit_logs(action: str | None = None, limit: int = 50) -> List[Dict[str, Any]]:
    query = AuditLog.query
    if action:
        query = query.filter(AuditLog.action == action)
    rows = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()
    return [row.to_dict() for row in rows]
