"""Audit trail helper for administrative actions."""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from models import ActivityLog, User

logger = logging.getLogger(__name__)


def log_activity(db: Session, user: Optional[User], action: str, description: str) -> None:
    """Record an action in its own commit. A failure here never blocks the action itself."""
    try:
        db.add(ActivityLog(user_id=user.id if user else None, action=action, description=description))
        db.commit()
    except Exception as e:
        logger.error(f"Failed to write activity log '{action}': {e}", exc_info=True)
        db.rollback()
