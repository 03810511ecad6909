from __future__ import annotations

from .certs import decode_certificate, decode_certificate_strict
from .codec import decode_base64, decode_base64_url, encode_base64, encode_base64_url
from .core import decode_token, sign_token, suggest_expectations, verify_token
from .errors import (
    ClaimError,
    DecodingError,
    EncodingError,
    FormatError,
    KeyFetchError,
    KeyImportError,
    KeyNotFoundError,
    SignatureError,
    TokenInspectorError,
)
from .keys import JWKSCache
from .models import (
    CertificateDecodeResult,
    CertificateExtension,
    CertificateView,
    DecodeResult,
    KeySource,
    SignResult,
    VerificationResult,
)
from .version import __version__

__all__ = [
    "CertificateDecodeResult",
    "CertificateExtension",
    "CertificateView",
    "ClaimError",
    "DecodeResult",
    "DecodingError",
    "EncodingError",
    "FormatError",
    "JWKSCache",
    "KeyFetchError",
    "KeyImportError",
    "KeyNotFoundError",
    "KeySource",
    "SignResult",
    "SignatureError",
    "TokenInspectorError",
    "VerificationResult",
    "__version__",
    "decode_base64",
    "decode_base64_url",
    "decode_certificate",
    "decode_certificate_strict",
    "decode_token",
    "encode_base64",
    "encode_base64_url",
    "sign_token",
    "suggest_expectations",
    "verify_token",
]
