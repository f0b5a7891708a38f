"""
Reconciliation conflict log.
Anything the engine refuses to resolve on its own is written here and logged at warning level.
"""
import logging
from sqlalchemy.orm import Session
from app.models.reconciliation_conflict import ReconciliationConflict, ConflictKind
from typing import Optional

logger = logging.getLogger(__name__)


def record_conflict(
    db: Session,
    kind: ConflictKind,
    detail: str,
    session_id: Optional[str] = None,
    charge_id: Optional[str] = None,
    commit: bool = False,
) -> ReconciliationConflict:
    """
    Persist a conflict for manual review.

    Args:
        db: Database session
        kind: Conflict category
        detail: Human-readable description
        session_id: Gateway session id, if known
        charge_id: Gateway charge id, if known
        commit: Commit immediately; use when the surrounding transaction is about to be rolled back
    """
    logger.warning(f"[RECONCILE] {kind.value}: {detail} (session={session_id}, charge={charge_id})")
    conflict = ReconciliationConflict(
        kind=kind.value,
        session_id=session_id,
        charge_id=charge_id,
        detail=detail,
    )
    db.add(conflict)
    if commit:
        db.commit()
    else:
        db.flush()
    return conflict
