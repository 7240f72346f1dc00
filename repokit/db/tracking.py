"""
Change counting for ``save_change()``.

``commit()`` does not report how many rows it touched, and autoflush may
push pending changes to the database long before the caller commits.  The
listeners below record which objects each flush writes in ``session.info``
so the repository can report the unit-of-work total at commit time.

An object written by several flushes (inserted, autoflushed, then modified
again) is one row and is counted once.

Listening on the ``Session`` class covers every sync session, including the
one wrapped by each ``AsyncSession``.
"""

from typing import Any, Set

from sqlalchemy import event, inspect
from sqlalchemy.orm import InstanceState, Session

FLUSHED_ROWS_KEY = "repokit.flushed_rows"


def pending_changes(session: Session) -> Set[InstanceState]:
    """States of the objects the next flush would insert, delete, or update."""
    objects = list(session.new) + list(session.deleted)
    objects += [obj for obj in session.dirty if session.is_modified(obj)]
    return {inspect(obj) for obj in objects}


def pop_flushed_rows(session_info: dict) -> int:
    """Return and reset the number of distinct rows written by one session."""
    return len(session_info.pop(FLUSHED_ROWS_KEY, ()))


@event.listens_for(Session, "before_flush")
def _record_flush(session: Session, flush_context: Any, instances: Any) -> None:
    session.info.setdefault(FLUSHED_ROWS_KEY, set()).update(pending_changes(session))


@event.listens_for(Session, "after_commit")
@event.listens_for(Session, "after_rollback")
def _reset_tally(session: Session) -> None:
    session.info.pop(FLUSHED_ROWS_KEY, None)
