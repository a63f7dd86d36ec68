class ValidationError(ValueError):
    """Missing or invalid input, or a state transition that is not allowed."""


class NotFoundError(ValueError):
    pass


class ContainmentError(ValueError):
    """A category budget would push a sector past its manual budget."""

    def __init__(self, sector_name: str, limit_cents: int, message: str) -> None:
        self.sector_name = sector_name
        self.limit_cents = limit_cents
        super().__init__(message)


class DuplicateImportError(ValueError):
    def __init__(self, external_id: str) -> None:
        self.external_id = external_id
        super().__init__(f"Transaction {external_id} was already imported")


class UpstreamFeedError(RuntimeError):
    """The bank feed failed or returned data that cannot be imported.

    Safe to retry: rows committed before the failure stay valid.
    """
