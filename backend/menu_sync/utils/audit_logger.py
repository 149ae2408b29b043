"""Audit trail entries for operator actions, with client IP behind reverse proxies."""

from typing import Optional, Dict, Any
from fastapi import Request
from sqlalchemy.orm import Session

from menu_sync.models.audit_log import AuditLog


def get_client_ip(request: Request) -> str:
    """
    Client IP, preferring the first X-Forwarded-For hop, then X-Real-IP,
    then the direct peer address.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        client_ip = forwarded_for.split(",")[0].strip()
        if client_ip:
            return client_ip

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host

    return "unknown"


def create_audit_log(
    db: Session,
    request: Request,
    action: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    user: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None
) -> AuditLog:
    """
    Record an operator action.

    Args:
        db: Database session
        request: FastAPI Request object (for IP/user-agent extraction)
        action: Action performed (e.g. 'sync_triggered', 'dlq_replayed', 'dlq_acknowledged')
        entity_type: Type of entity affected (e.g. 'sync_run', 'dlq_message', 'delta')
        entity_id: ID of affected entity
        user: Operator performing the action
        details: Additional context as JSON

    Returns:
        Created AuditLog instance
    """
    audit_log = AuditLog(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        user=user,
        details=details,
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("User-Agent")
    )

    db.add(audit_log)
    db.commit()
    db.refresh(audit_log)

    return audit_log
