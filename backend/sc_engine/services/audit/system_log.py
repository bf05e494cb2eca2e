"""
System Log & Notification Service

Persistent audit trail for handler outcomes and federation security events.

Core Principles:
1. Every handler outcome is logged: success or failure, with severity.
2. Integrity failures are security events, kept apart from validation noise.
3. Notifications are fire-and-forget. A failing notification never blocks
   the write that triggered it.
"""
import logging
from contextlib import contextmanager
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...errors import SCEngineError
from ...models.db_models import NotificationDB, SecurityEventDB, SystemLogDB


logger = logging.getLogger(__name__)


class SystemLogService:
    """Append-only writer for SystemLogDB and SecurityEventDB."""

    def __init__(self, db: Session):
        self.db = db

    def log(
        self,
        action: str,
        result: str,
        division: Optional[str] = None,
        level: str = "info",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SystemLogDB:
        entry = SystemLogDB(
            id=str(uuid4()),
            action=action,
            division=division,
            result=result,
            log_level=level,
            event_metadata=metadata,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def record_security_event(
        self,
        event_type: str,
        detail: str,
        peer_name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SecurityEventDB:
        """
        Record a federation integrity failure.

        Args:
            event_type: hash_mismatch, bad_signature or clock_skew
            detail: Human-readable reason
            peer_name: Claimed sender, if known
            metadata: Extra context (declared hash, window_end, ...)
        """
        event = SecurityEventDB(
            id=str(uuid4()),
            event_type=event_type,
            peer_name=peer_name,
            detail=detail,
            event_metadata=metadata,
        )
        self.db.add(event)
        self.db.flush()
        logger.warning(f"security_event type={event_type} peer={peer_name}: {detail}")
        return event


class NotificationSink:
    """
    Fire-and-forget notification writer.

    Each notification is written inside its own savepoint so a failure rolls
    back only the notification row.
    """

    def __init__(self, db: Session):
        self.db = db

    def notify(self, title: str, message: str, division: Optional[str] = None) -> bool:
        try:
            with self.db.begin_nested():
                self.db.add(NotificationDB(
                    id=str(uuid4()),
                    title=title,
                    message=message,
                    division=division,
                ))
            return True
        except Exception as e:
            logger.warning(f"Notification dropped ({title}): {e}")
            return False


def _write_failure(db: Session, action: str, division: Optional[str], result: str, level: str) -> None:
    try:
        SystemLogService(db).log(action, result, division=division, level=level)
        db.commit()
    except Exception as log_error:
        db.rollback()
        logger.error(f"Could not write system log for {action}: {log_error}")


@contextmanager
def audited_action(db: Session, action: str, division: Optional[str] = None):
    """
    Wrap a unit of work with commit/rollback and a system log entry.

    On success the work and an info log entry are committed together.
    On failure the work is rolled back, the failure is logged with the
    error's severity, and the error is re-raised. Unexpected exceptions are
    re-raised as a generic internal fault.

    Usage:
        with audited_action(db, "allocation.rebalance"):
            result = engine.run(policy_key, mode)
    """
    try:
        yield
    except SCEngineError as e:
        db.rollback()
        logger.log(
            logging.ERROR if e.status_code >= 500 else logging.WARNING,
            f"{action} failed ({type(e).__name__}): {e.message}",
        )
        _write_failure(db, action, division, e.message, e.severity)
        raise
    except Exception as e:
        db.rollback()
        logger.exception(f"{action} failed with unexpected error")
        _write_failure(db, action, division, f"internal fault: {e}", "error")
        raise SCEngineError("Internal fault") from e
    else:
        SystemLogService(db).log(action, "success", division=division)
        db.commit()
