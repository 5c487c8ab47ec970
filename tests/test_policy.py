import uuid

import pytest

from consenthub.core.errors import (
    ConflictError,
    ErrorKind,
    ForbiddenError,
    NotFoundError,
    TransientError,
)
from consenthub.core.policy import Operation, Principal, enforce, is_allowed


def test_owner_is_allowed_every_operation():
    owner = Principal(user_id=uuid.uuid4())
    for op in Operation:
        assert is_allowed(owner, op, owner.user_id) is True


def test_other_principal_is_denied_every_operation():
    owner_id = uuid.uuid4()
    other = Principal(user_id=uuid.uuid4())
    for op in Operation:
        assert is_allowed(other, op, owner_id) is False


def test_missing_principal_or_owner_is_denied():
    principal = Principal(user_id=uuid.uuid4())
    assert is_allowed(None, Operation.read, principal.user_id) is False
    assert is_allowed(principal, Operation.insert, None) is False


def test_enforce_raises_forbidden_with_context():
    record_id = uuid.uuid4()
    with pytest.raises(ForbiddenError) as exc_info:
        enforce(Principal(user_id=uuid.uuid4()), Operation.update, uuid.uuid4(), record_id=record_id)

    err = exc_info.value
    assert err.kind is ErrorKind.forbidden
    assert err.status_code == 403
    assert err.details == {"operation": "update", "record_id": record_id}


def test_enforce_passes_for_owner():
    owner = Principal(user_id=uuid.uuid4())
    enforce(owner, Operation.delete, owner.user_id)


def test_error_kinds_and_retryability():
    assert ConflictError("x").status_code == 409
    assert NotFoundError("x").status_code == 404
    assert TransientError("x").status_code == 503
    assert TransientError("x").retryable is True
    assert ForbiddenError("x").retryable is False


def test_error_to_dict_drops_empty_context():
    assert NotFoundError("gone").to_dict() == {"error_code": "not_found", "detail": "gone"}
    body = ConflictError("exists", provider_id="clinic", record_id=None).to_dict()
    assert body == {"error_code": "conflict", "detail": "exists", "context": {"provider_id": "clinic"}}
