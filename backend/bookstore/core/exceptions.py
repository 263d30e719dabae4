"""
Error taxonomy for the wishlist/cart monitoring core.

Every error is an ``HTTPException`` so routes can let them propagate
unchanged and FastAPI renders the right status code.
"""
from typing import Optional
from fastapi import HTTPException, status


class NotFoundError(HTTPException):
    """Referenced book or document does not exist."""

    def __init__(self, detail: str = "Not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class ValidationError(HTTPException):
    """Duplicate add, quantity/stock limit exceeded or malformed input."""

    def __init__(self, detail: str = "Invalid request"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class ConflictError(HTTPException):
    """A versioned update lost a compare-and-swap race."""

    def __init__(self, detail: str = "Document was modified concurrently"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class ConnectivityError(HTTPException):
    """Document store is unreachable."""

    def __init__(self, detail: str = "Document store unavailable", cause: Optional[Exception] = None):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)
        self.cause = cause
