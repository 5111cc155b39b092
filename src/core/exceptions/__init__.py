from src.core.exceptions.base import (
    AppException,
    NotFoundError,
    ValidationError,
    InvalidScopeError,
    ManualNumberConflictError,
    FinalNumberTakenError,
    ConcurrentNumberingConflictError,
    NumberingExhaustedError,
)

__all__ = [
    "AppException",
    "NotFoundError",
    "ValidationError",
    "InvalidScopeError",
    "ManualNumberConflictError",
    "FinalNumberTakenError",
    "ConcurrentNumberingConflictError",
    "NumberingExhaustedError",
]
