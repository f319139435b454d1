from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from . import metrics
from .database import get_connection, placeholder

logger = logging.getLogger(__name__)


class AuditLog:
    """Append-only audit trail. Writes never fail the calling operation."""

    def __init__(self, connection_factory=get_connection):
        self._connection_factory = connection_factory

    def record(
        self,
        action: str,
        entity_type: str,
        entity_id: Optional[str] = None,
        actor_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        ip: Optional[str] = None,
    ) -> bool:
        try:
            conn = self._connection_factory()
            try:
                p = placeholder(conn)
                conn.execute(
                    f"""
                    INSERT INTO audit_logs (
                        id, action, entity_type, entity_id, actor_id, metadata, ip_address, created_at
                    ) VALUES ({p}, {p}, {p}, {p}, {p}, {p}, {p}, {p});
                    """,
                    (
                        str(uuid.uuid4()),
                        action,
                        entity_type,
                        entity_id,
                        actor_id,
                        json.dumps(metadata) if metadata is not None else None,
                        ip,
                        datetime.now(timezone.utc).isoformat(),
                    ),
                )
                conn.commit()
            finally:
                conn.close()
        except Exception:
            logger.warning("Audit log write failed action=%s entity=%s", action, entity_id, exc_info=True)
            metrics.audit_write_failures.inc()
            return False
        return True
