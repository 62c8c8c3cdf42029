"""
BaseService -- abstract base for all kernel write services.

Every service receives a SQLAlchemy ``Session`` from its caller and persists
with ``session.flush()``, never ``session.commit()``.  The boundary layer
(``reimbursement_services.workflow``) owns commit and rollback, so a
multi-step operation such as "record decision, finalize, materialize" is
all-or-nothing.
"""

from abc import ABC

from sqlalchemy.orm import Session

from reimbursement_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for all kernel services.

    Guarantees:
        - The service never calls ``session.commit()`` or
          ``session.rollback()``.  Partial work is isolated with SAVEPOINTs
          (``session.begin_nested()``) where a sub-step may fail on its own.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
