from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from flask import g, has_request_context
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.pharmaqa.models import AuditEvent, User

# Operator-visible channel: failures that must not break the business call but must not be silent.
operator_log = logging.getLogger("pharmaqa.operator")


class AuditDeliveryError(RuntimeError):
    code = "audit_delivery_failed"


def _request_id() -> str | None:
    if not has_request_context():
        return None
    return getattr(g, "request_id", None)


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    details: str | None = None,
    changes: dict[str, Any] | None = None,
    actor_identity: str | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append-only audit event helper. The event joins the caller's transaction.
    """
    ev = AuditEvent(
        request_id=request_id or _request_id(),
        actor_user_id=actor.id if actor else None,
        actor_identity=actor.email if actor else actor_identity,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        details=details,
        changes_json=json.dumps(changes, sort_keys=True, default=str) if changes else None,
    )
    s.add(ev)
    return ev


@dataclass(frozen=True)
class AuditLogEntry:
    action: str
    entity_type: str
    entity_id: str
    actor_identity: str
    details: str
    changes: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)
    reason: str | None = None
    request_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "actorIdentity": self.actor_identity,
            "details": self.details,
            "changes": self.changes,
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
        }


OperatorSink = Callable[[AuditLogEntry, Exception], None]


class AuditLogger:
    """
    Writes audit entries in a session of their own, so a failed append can never
    roll back the decision that produced it.
    """

    def __init__(self, sm: sessionmaker, *, operator_sinks: list[OperatorSink] | None = None) -> None:
        self._sm = sm
        self._operator_sinks: list[OperatorSink] = list(operator_sinks or [])

    def append(self, entry: AuditLogEntry) -> AuditEvent:
        s: Session = self._sm()
        try:
            actor = s.query(User).filter(User.email == entry.actor_identity).one_or_none()
            ev = record_event(
                s,
                actor=actor,
                actor_identity=entry.actor_identity,
                action=entry.action,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                reason=entry.reason,
                details=entry.details,
                changes=entry.changes,
                request_id=entry.request_id or _request_id(),
            )
            ev.created_at = entry.timestamp
            s.commit()
            return ev
        except SQLAlchemyError as e:
            s.rollback()
            raise AuditDeliveryError(f"Audit append failed for {entry.entity_type} {entry.entity_id}: {e}") from e
        finally:
            s.close()

    def log_action(self, entry: AuditLogEntry) -> bool:
        """Fire-and-forget: returns False (and alerts operators) instead of raising."""
        try:
            self.append(entry)
            return True
        except AuditDeliveryError as e:
            self.report_failure(entry, e)
            return False

    def report_failure(self, entry: AuditLogEntry, exc: Exception) -> None:
        operator_log.error(
            "AUDIT DELIVERY FAILED action=%s entity=%s/%s actor=%s err=%s entry=%s",
            entry.action,
            entry.entity_type,
            entry.entity_id,
            entry.actor_identity,
            exc,
            json.dumps(entry.to_dict(), sort_keys=True, default=str),
        )
        for sink in self._operator_sinks:
            try:
                sink(entry, exc)
            except Exception:
                operator_log.exception("Operator sink %r raised while reporting an audit failure", sink)
