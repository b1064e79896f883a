from typing import Any, Dict


class LedgerError(Exception):
    status_code = 500
    error = "Error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def as_dict(self) -> Dict[str, Any]:
        return {"error": self.error, "message": self.message, "statusCode": self.status_code}


class InvalidPayload(LedgerError):
    status_code = 400
    error = "InvalidPayload"


class NotFound(LedgerError):
    status_code = 404
    error = "NotFound"


class InconsistentState(LedgerError):
    """Stored totals disagree with the totals recomputed from deltas."""

    status_code = 409
    error = "InconsistentState"

    def __init__(self, message: str, drift=None):
        super().__init__(message)
        self.drift = drift or []


class StoreUnavailable(LedgerError):
    """Transient storage failure; the surrounding transaction was rolled back and can be retried."""

    status_code = 503
    error = "StoreUnavailable"
