"""
Transaction helpers.

Every multi-row mutation in the services runs inside ``unit_of_work()``:
the body works on ``db.session``, the block commits on success and rolls
the whole session back on any exception, which is then re-raised.

Conditional ("compare expected value, then update") writes go through
``conditional_update`` so the affected-row contract lives in one place.

Usage:
    with unit_of_work():
        work = load_work(work_id)
        conditional_update(
            Work.query.filter_by(id=work_id, state_name=expected),
            {"state_name": target},
        )
"""

import logging
from contextlib import contextmanager

from trackflow.core.exceptions import ConcurrentModificationError
from trackflow.models import db

logger = logging.getLogger(__name__)


@contextmanager
def unit_of_work():
    """Commit on success, roll back and re-raise on failure."""
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def conditional_update(query, values: dict, *, subject: str | None = None, expected: int = 1) -> int:
    """Apply ``values`` to the rows matched by ``query`` and require ``expected`` matches.

    Raises:
        ConcurrentModificationError: the precondition encoded in ``query``
            matched a different number of rows.
    """
    affected = query.update(values, synchronize_session=False)
    if affected != expected:
        logger.info("Conditional update rejected subject=%s affected=%s", subject, affected)
        raise ConcurrentModificationError(expected, affected, subject=subject)
    return affected
