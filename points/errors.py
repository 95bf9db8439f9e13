from typing import Optional


class PointsError(Exception):
    pass


class ValidationError(PointsError):
    pass


class OutOfRangeError(ValidationError):
    pass


class NotFoundError(PointsError):
    pass


class OrderNotFoundError(NotFoundError):
    pass


class BalanceNotFoundError(NotFoundError):
    pass


class StateConflictError(PointsError):
    pass


class InvalidStateTransitionError(StateConflictError):
    pass


class TransactionMismatchError(StateConflictError):
    pass


class LedgerError(PointsError):
    pass


class InsufficientPendingError(LedgerError):
    pass


class InsufficientAvailableError(LedgerError):
    pass


class CreditPointsError(PointsError):
    pass


class IntegrationError(PointsError):
    pass


class GatewayError(IntegrationError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GatewayTimeoutError(GatewayError):
    pass


class TransactionNotFoundError(GatewayError):
    pass
