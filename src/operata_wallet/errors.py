"""Exception types shared across Operata Wallet."""

from __future__ import annotations


class OperataError(Exception):
    """Base class for every error raised by this package."""


class NotFoundError(OperataError):
    """A workspace, wallet, key pair or record does not exist."""


class ValidationError(OperataError):
    """A Notion page is missing fields required to schedule a transfer."""

    def __init__(self, page_id: str, missing: list[str]) -> None:
        self.page_id = page_id
        self.missing = missing
        super().__init__(
            f"Page {page_id} is missing required fields: {', '.join(missing)}"
        )


class CustodyError(OperataError):
    """Sealed key material could not be opened (tampered blob or wrong secret)."""


class ChainError(OperataError):
    """Submitting or confirming a chain transaction failed."""


class NotionAPIError(OperataError):
    """The Notion API answered with an error status."""

    def __init__(self, status_code: int, code: str = "", message: str = "") -> None:
        self.status_code = status_code
        self.code = code
        self.message = message
        super().__init__(f"Notion API error {status_code} ({code}): {message}")


class UnsupportedPropertyError(OperataError):
    """A page property has a kind the accessor does not decode."""


class PropertyTypeError(OperataError):
    """A page property exists but is not of the expected kind."""
