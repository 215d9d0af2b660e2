"""
Scanner relay error taxonomy.

Barcode-level errors (InvalidBarcode, NotFound, PublishFailure) are recovered
locally and reported to the user. SubscriptionFailure never leaves the change
feed subscriber; it only shows up as a `reconnecting` status badge.
"""


class ScannerError(Exception):
    status_code = 400
    code = "scanner_error"

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.code)
        self.detail = detail or self.code


class InvalidBarcode(ScannerError):
    code = "invalid_barcode"


class NotFound(ScannerError):
    status_code = 404
    code = "not_found"

    def __init__(self, barcode: str):
        super().__init__(f"no medicine found for: {barcode}")
        self.barcode = barcode


class PublishFailure(ScannerError):
    status_code = 503
    code = "publish_failed"


class SubscriptionFailure(ScannerError):
    status_code = 503
    code = "subscription_failed"


class InvalidSession(ScannerError):
    code = "invalid_session"


class UnknownSession(ScannerError):
    status_code = 404
    code = "unknown_session"


class SessionConflict(ScannerError):
    status_code = 409
    code = "session_already_attached"


class StagingError(ScannerError):
    code = "staging_error"


class ResolutionUnavailable(ScannerError):
    status_code = 503
    code = "resolution_unavailable"
