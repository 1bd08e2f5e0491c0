from __future__ import annotations

import enum
import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import AuditAction, AuditLog, User, utcnow

logger = logging.getLogger(__name__)

# Never copied into audit details
SENSITIVE_FIELDS = frozenset({"password_hash"})


def _jsonable(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, tuple):
        return list(value)
    return str(value)


def serialize_details(details: Mapping[str, Any] | None) -> str | None:
    if details is None:
        return None
    clean = {k: ("***" if k in SENSITIVE_FIELDS else v) for k, v in details.items()}
    return json.dumps(clean, default=_jsonable, sort_keys=True)


class AuditRecorder:
    """
    Appends AuditLog rows inside the caller's transaction.
    An unknown performer is recorded as empty: audit never blocks the mutation it describes.
    """

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled

    def record(
        self,
        session: Session,
        entity: str,
        entity_id: Any,
        action: AuditAction | str,
        performed_by: int | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> AuditLog | None:
        if not self.enabled:
            return None

        payload = dict(details or {})
        if not isinstance(entity_id, int) or isinstance(entity_id, bool):
            # composite keys do not fit the integer column: keep them in the details
            if entity_id is not None:
                payload.setdefault("key", entity_id)
            entity_id = None

        row = AuditLog(
            entity=entity,
            entity_id=entity_id,
            action=AuditAction(action),
            performed_by_user=self._resolve_performer(session, performed_by),
            performed_at=utcnow(),
            details=serialize_details(payload) if payload else None,
        )
        session.add(row)
        session.flush()
        return row

    def _resolve_performer(self, session: Session, performed_by: Any) -> int | None:
        if performed_by is None:
            return None
        if isinstance(performed_by, int) and not isinstance(performed_by, bool):
            if session.execute(select(User.id).where(User.id == performed_by)).first() is not None:
                return performed_by
        logger.warning("audit performer %r does not resolve to a user, recording it as empty", performed_by)
        return None
