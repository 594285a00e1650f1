"""
error taxonomy for the money core.

business-rule violations subclass ValueError so HTTP handlers can keep
mapping them to 4xx the same way as any other bad input.
"""


class LedgerError(ValueError):
    pass


class ConfigurationNotFound(LedgerError):
    pass


class NotFound(LedgerError):
    pass


class AlreadyPaid(LedgerError):
    pass


class AlreadyCompleted(LedgerError):
    pass


class InvalidStatusTransition(LedgerError):
    pass


class ProviderError(Exception):
    """
    payment provider failure. `cause` keeps the provider's own exception.
    not a ValueError: it is an upstream failure, not bad input.
    """

    def __init__(self, message: str, cause: Exception = None):
        super().__init__(message)
        self.cause = cause
