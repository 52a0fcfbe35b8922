from fastapi import HTTPException


class LoyaltyError(HTTPException):
    """
    Base des erreurs métier. `detail` est toujours un dict
    {"code", "message", ...contexte} pour que l'UI affiche le message
    et que l'admin garde les champs machine.
    """

    default_status_code = 400
    code = "loyalty_error"

    def __init__(self, message: str, *, status_code: int | None = None, **context):
        self.message = message
        self.context = context
        super().__init__(
            status_code=status_code or self.default_status_code,
            detail={"code": self.code, "message": message, **context},
        )


class LoyaltyValidationError(LoyaltyError):
    default_status_code = 400
    code = "validation_error"


class NotFoundError(LoyaltyError):
    default_status_code = 404
    code = "not_found"


class StateConflictError(LoyaltyError):
    default_status_code = 409
    code = "state_conflict"

    def __init__(self, message: str, *, current_status: str | None = None, **context):
        self.current_status = current_status
        super().__init__(message, currentStatus=current_status, **context)


class TenantScopeError(LoyaltyError):
    default_status_code = 403
    code = "tenant_scope"


class InsufficientBalance(LoyaltyError):
    default_status_code = 400
    code = "insufficient_balance"

    def __init__(self, *, balance: int, threshold: int):
        self.balance = balance
        self.threshold = threshold
        super().__init__("Not enough stamps to redeem yet.", balance=balance, threshold=threshold)


class ConcurrentUpdateError(LoyaltyError):
    default_status_code = 409
    code = "concurrent_update"

    def __init__(self, message: str = "Another request updated this card at the same time. Please try again."):
        super().__init__(message, retryable=True)


class RateLimitedError(LoyaltyError):
    default_status_code = 429
    code = "rate_limited"
