from __future__ import annotations

import logging
from datetime import date

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import CODE_SEQUENCE_RETRIES
from app.core.errors import Conflict
from app.db.models.stages import DocumentSequence

logger = logging.getLogger(__name__)


def next_value(db: Session, key: str, *, start: int = 1) -> int:
    """Take the next number of a named counter inside the caller's transaction.

    The counter row stays locked until the caller commits, so concurrent callers
    queue on it instead of reading the same value.
    """
    for _ in range(CODE_SEQUENCE_RETRIES):
        seq = db.query(DocumentSequence).filter(DocumentSequence.key == key).with_for_update().first()
        if seq:
            value = seq.next_value
            seq.next_value = value + 1
            db.flush()
            return value
        try:
            with db.begin_nested():
                db.add(DocumentSequence(key=key, next_value=start + 1))
            return start
        except IntegrityError:
            # Another transaction created the counter first; lock theirs.
            logger.info("document sequence %s created concurrently, retrying", key)
    raise Conflict("Could not allocate a sequence number", sequence=key)


def dated_code(db: Session, prefix: str, *, on: date | None = None) -> str:
    """`<prefix><YYYYMMDD>-<NNN>`, numbered per prefix and day."""
    stamp = (on or date.today()).strftime("%Y%m%d")
    value = next_value(db, f"{prefix}{stamp}")
    return f"{prefix}{stamp}-{value:03d}"
