from __future__ import annotations


class TokenInspectorError(ValueError):
    """Base class for every expected failure raised by the engine."""


class FormatError(TokenInspectorError):
    pass


class EncodingError(FormatError):
    pass


class DecodingError(FormatError):
    pass


class KeyFetchError(TokenInspectorError):
    pass


class KeyNotFoundError(TokenInspectorError):
    pass


class KeyImportError(TokenInspectorError):
    pass


class SignatureError(TokenInspectorError):
    pass


class ClaimError(TokenInspectorError):
    """A time, issuer or audience claim failed.

    ``check`` is the validation detail key the failure belongs to
    (``expiry``, ``issuer`` or ``audience``).
    """

    def __init__(self, message: str, *, check: str) -> None:
        super().__init__(message)
        self.check = check
