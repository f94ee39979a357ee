"""Human-readable numbers backed by a monotonic database sequence."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy.orm import Session

from fieldsync.server.models import Sequence

PACKAGE_PREFIX = "PKG"
CONFLICT_PREFIX = "CNF"


def next_number(session: Session, prefix: str, now: datetime | None = None) -> str:
    """Allocate the next number for ``prefix`` in the current year.

    The counter row is updated inside the caller's transaction, so the number
    is only consumed if that transaction commits.

    Returns:
        A number such as ``PKG-2026-000042``.
    """
    year = (now or datetime.now(UTC)).year
    name = f"{prefix}-{year}"
    sequence = session.get(Sequence, name, with_for_update=True)
    if sequence is None:
        sequence = Sequence(name=name, value=0)
        session.add(sequence)
    sequence.value += 1
    session.flush()
    return f"{name}-{sequence.value:06d}"
