"""Base64 and Base64-URL helpers.

The text-level functions follow the browser "binary string" convention: each
character stands for one byte, so only U+0000..U+00FF can be encoded. Use the
``*_bytes`` helpers for real binary data.
"""

from __future__ import annotations

import base64
import binascii
import re

from .errors import DecodingError, EncodingError

_STANDARD_ALPHABET = re.compile(r"[A-Za-z0-9+/]*")
_ASCII_WHITESPACE = re.compile(r"[\t\n\f\r ]+")


def _decode_standard(b64: str) -> bytes:
    text = _ASCII_WHITESPACE.sub("", b64)
    if len(text) % 4 == 0 and text.endswith("="):
        text = text[:-2] if text.endswith("==") else text[:-1]
    if len(text) % 4 == 1 or not _STANDARD_ALPHABET.fullmatch(text):
        raise DecodingError("Invalid Base64 string")
    padded = text + "=" * (-len(text) % 4)
    try:
        return base64.b64decode(padded, validate=True)
    except binascii.Error as exc:  # pragma: no cover - alphabet/length already checked
        raise DecodingError("Invalid Base64 string") from exc


def _url_to_standard(b64url: str) -> str:
    text = b64url.replace("-", "+").replace("_", "/")
    remainder = len(text) % 4
    if remainder == 1:
        raise DecodingError("Invalid Base64Url string")
    if remainder:
        text += "=" * (4 - remainder)
    return text


def encode_base64(text: str) -> str:
    try:
        raw = text.encode("latin-1")
    except UnicodeEncodeError:
        raise EncodingError(
            "Invalid input for Base64 encoding (characters outside U+0000..U+00FF)"
        ) from None
    return base64.b64encode(raw).decode("ascii")


def decode_base64(b64: str) -> str:
    return _decode_standard(b64).decode("latin-1")


def encode_base64_url(text: str) -> str:
    return encode_base64(text).replace("+", "-").replace("/", "_").rstrip("=")


def decode_base64_url(b64url: str) -> str:
    return decode_base64(_url_to_standard(b64url))


def b64url_encode_bytes(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode_bytes(b64url: str) -> bytes:
    return _decode_standard(_url_to_standard(b64url))


def b64_decode_bytes(b64: str) -> bytes:
    return _decode_standard(b64)
