from pilot_flags.core.errors import (
    DuplicateConflictError,
    DuplicateEntryError,
    ErrorCode,
    FlagNotFoundError,
    StoreError,
    build_error,
)


def test_error_body_carries_code_and_context():
    err = FlagNotFoundError("Feature flag 7 not found", flag_id=7)
    assert err.to_dict() == {
        "code": "NOT_FOUND",
        "message": "Feature flag 7 not found",
        "context": {"flag_id": 7},
    }


def test_duplicates_share_conflict_code():
    err = DuplicateEntryError("'U1' is already whitelisted")
    assert isinstance(err, DuplicateConflictError)
    assert err.code == ErrorCode.DUPLICATE_CONFLICT


def test_store_error_default_code():
    assert StoreError("disk full").to_dict()["code"] == "STORE_ERROR"


def test_build_error_detail():
    body = build_error(ErrorCode.VALIDATION_FAILED, "bad", detail="name is required")
    assert body == {"code": "VALIDATION_FAILED", "message": "bad", "detail": "name is required"}
