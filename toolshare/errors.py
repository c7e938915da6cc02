from fastapi import HTTPException, status


class NotFound(HTTPException):
    """Tool, rental request or conversation does not exist."""

    def __init__(self, detail: str = "Not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class Forbidden(HTTPException):
    """Caller lacks the role or ownership the operation needs."""

    def __init__(self, detail: str = "Not allowed"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class InvalidState(HTTPException):
    """Transition attempted from the wrong rental status."""

    def __init__(self, detail: str = "Invalid rental status for this action"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class Conflict(HTTPException):
    """Booking clashes with an approved rental, or the tool is locked by one."""

    def __init__(self, detail: str = "Conflicting booking"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class Validation(HTTPException):
    """Bad date range, out-of-bounds rating or other rejected input."""

    def __init__(self, detail: str = "Invalid input"):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail
        )
