from __future__ import annotations


class StoreError(Exception):
    """A store operation failed (network, permission, corrupt data)."""


class DocumentNotFound(StoreError):
    pass


class DocumentExists(StoreError):
    pass


class BlobError(Exception):
    pass


class AuthRequired(Exception):
    """Raised when an operation needs a signed-in identity and there is none."""

    def __init__(self, redirect_to: str = "/login") -> None:
        super().__init__("authentication required")
        self.redirect_to = redirect_to
