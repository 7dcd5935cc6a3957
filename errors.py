class MarketplaceError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationFailed(MarketplaceError):
    """Missing or malformed input; raised before anything is written."""
    status_code = 400


class PreconditionFailed(MarketplaceError):
    """Wrong status, insufficient stock, OTP mismatch and similar."""
    status_code = 400


class NotFound(MarketplaceError):
    status_code = 404


class Forbidden(MarketplaceError):
    status_code = 403


class Conflict(MarketplaceError):
    status_code = 409
