"""
API Mapper
==========

Transforms engine results into JSON DTOs and engine errors into HTTP
errors. Records are mapped field by field with the strict record
encoder; nothing is summarized or reordered.
"""
import json
from typing import Any, Dict

from fastapi import HTTPException

from ..contracts.base import Error, ErrorCode, Result
from ..domain.serialization import dumps


NOT_FOUND_CODES = frozenset({
    ErrorCode.PROJECT_NOT_FOUND,
    ErrorCode.UNIT_NOT_FOUND,
    ErrorCode.ARTIFACT_NOT_FOUND,
    ErrorCode.SNAPSHOT_NOT_FOUND,
    ErrorCode.RETCON_NOT_FOUND,
    ErrorCode.PATCH_NOT_FOUND,
    ErrorCode.BATCH_NOT_FOUND,
})

INPUT_CODES = frozenset({
    ErrorCode.MISSING_REQUIRED_FACT,
    ErrorCode.INVALID_FACT_VALUE,
    ErrorCode.INVALID_ARGUMENT,
    ErrorCode.REASON_REQUIRED,
    ErrorCode.CONFIRMATION_REQUIRED,
})


def status_for(code: ErrorCode) -> int:
    if code in NOT_FOUND_CODES:
        return 404
    if code in INPUT_CODES:
        return 422
    if code == ErrorCode.INTERNAL_ERROR:
        return 500
    if code == ErrorCode.GENERATION_FAILED:
        return 502
    return 409


def error_detail(error: Error) -> Dict[str, Any]:
    return {
        "code": error.code.name,
        "message": error.message,
        "context": dict(error.context),
    }


def to_dto(value: Any) -> Any:
    """Plain JSON structure for any record, tuple of records or scalar."""
    return json.loads(dumps(value))


def unwrap(result: Result) -> Any:
    """The DTO of a successful result; raises HTTPException otherwise."""
    if result.is_failure:
        raise HTTPException(status_code=status_for(result.error.code), detail=error_detail(result.error))
    return to_dto(result.value)
