"""Row-level access policy for consent records.

A record is readable, updatable and deletable only by its owner, and a
principal may only insert records it owns. The consent store calls enforce()
before every query or write, so a client that skips its own checks gains
nothing.
"""

import enum
import logging
import uuid
from dataclasses import dataclass

from consenthub.core.errors import ForbiddenError

logger = logging.getLogger("consenthub.policy")


class Operation(str, enum.Enum):
    read = "read"
    insert = "insert"
    update = "update"
    delete = "delete"


@dataclass(frozen=True)
class Principal:
    """The authenticated identity performing an operation."""

    user_id: uuid.UUID

    def __str__(self) -> str:
        return str(self.user_id)


def is_allowed(
    principal: Principal | None,
    operation: Operation,
    owner_id: uuid.UUID | None,
) -> bool:
    """Return True iff principal owns the record (or the insert candidate).

    For reads, updates and deletes owner_id is the stored record's user_id;
    for inserts it is the candidate record's user_id. The rule is the same.
    """
    if principal is None or owner_id is None:
        return False
    return principal.user_id == owner_id


def enforce(
    principal: Principal | None,
    operation: Operation,
    owner_id: uuid.UUID | None,
    *,
    record_id: uuid.UUID | None = None,
) -> None:
    """Raise ForbiddenError unless is_allowed()."""
    if is_allowed(principal, operation, owner_id):
        return
    logger.warning(
        "Policy denied op=%s principal=%s record=%s",
        operation.value,
        principal,
        record_id,
    )
    raise ForbiddenError(
        f"Not permitted to {operation.value} this consent record",
        operation=operation.value,
        record_id=record_id,
    )
