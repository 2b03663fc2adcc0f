class LedgerServiceError(Exception):
    pass


class InvalidArgumentError(LedgerServiceError):
    pass


class NotFoundError(LedgerServiceError):
    pass


class StoreFailureError(LedgerServiceError):
    pass


class CascadeWarning(LedgerServiceError):
    """Non-fatal failure of a cascade step. Logged, never raised to callers."""

    def __init__(self, step: str, message: str):
        super().__init__(f"{step}: {message}")
        self.step = step
        self.message = message
