class AppError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class BadRequestError(AppError):
    status_code = 400
    code = "BAD_REQUEST"


class UnauthorizedError(AppError):
    status_code = 401
    code = "UNAUTHORIZED"


class ForbiddenError(AppError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"


class StaffAlreadyAssignedError(ConflictError):
    code = "ALREADY_ASSIGNED"

    def __init__(self, message: str = "user already assigned to this stand"):
        super().__init__(message)


class ConcurrentModificationError(ConflictError):
    code = "CONCURRENT_MODIFICATION"

    def __init__(self, message: str = "concurrent modification detected, please retry"):
        super().__init__(message)


class InsufficientBalanceError(BadRequestError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, message: str = "insufficient balance"):
        super().__init__(message)


class WalletNotActiveError(BadRequestError):
    code = "WALLET_NOT_ACTIVE"

    def __init__(self, message: str = "wallet is not active"):
        super().__init__(message)


class InvalidQRCodeError(BadRequestError):
    code = "INVALID_QR_CODE"


class DeliveryAlreadyDeliveredError(BadRequestError):
    code = "DELIVERY_ALREADY_DELIVERED"

    def __init__(self, message: str = "delivery was already successful"):
        super().__init__(message)
