from fastapi import HTTPException, status

from stockledger.errors import (
    ConcurrencyConflictError,
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    PermissionDeniedError,
    StockLedgerError,
    ValidationError,
)


def to_http_exception(exc: StockLedgerError) -> HTTPException:
    if isinstance(exc, InsufficientStockError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "insufficient_stock", "message": str(exc), "violations": exc.violations},
        )
    if isinstance(exc, ConcurrencyConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "concurrency_conflict", "message": str(exc)},
        )
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, PermissionDeniedError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
