from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

NOT_AVAILABLE = "Not available"

KEY_SOURCE_KINDS = ("key", "key_set", "key_set_url")

# Validation detail keys, in the order the verifier can attempt them.
CHECK_KEY_ID = "keyId"
CHECK_SIGNATURE = "signature"
CHECK_EXPIRY = "expiry"
CHECK_ISSUER = "issuer"
CHECK_AUDIENCE = "audience"


@dataclass(frozen=True)
class KeySource:
    """Where the verification key comes from.

    Exactly one of ``key`` (JWK mapping, PEM text or HMAC secret), ``key_set``
    (``{"keys": [...]}``) or ``key_set_url`` must be set.
    """

    key: dict[str, Any] | str | None = None
    key_set: dict[str, Any] | None = None
    key_set_url: str | None = None

    def __post_init__(self) -> None:
        present = [kind for kind in KEY_SOURCE_KINDS if getattr(self, kind) is not None]
        if not present:
            raise ValueError("key source requires one of key, key_set or key_set_url")
        if len(present) > 1:
            raise ValueError(f"key source must set exactly one of {', '.join(present)}")
        if self.key_set is not None and not isinstance(self.key_set, dict):
            raise ValueError("key_set must be a JSON object")
        if self.key_set_url is not None and not self.key_set_url.strip():
            raise ValueError("key_set_url must not be empty")

    @classmethod
    def from_key(cls, key: dict[str, Any] | str) -> KeySource:
        return cls(key=key)

    @classmethod
    def from_key_set(cls, key_set: dict[str, Any]) -> KeySource:
        return cls(key_set=key_set)

    @classmethod
    def from_url(cls, url: str) -> KeySource:
        return cls(key_set_url=url)

    @property
    def kind(self) -> str:
        if self.key is not None:
            return "key"
        if self.key_set is not None:
            return "key_set"
        return "key_set_url"


@dataclass(frozen=True)
class DecodeResult:
    header: dict[str, Any] | None
    payload: dict[str, Any] | None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {"header": self.header, "payload": self.payload, "error": self.error}


@dataclass(frozen=True)
class SignResult:
    token: str
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"token": self.token, "error": self.error}


@dataclass(frozen=True)
class VerificationResult:
    is_valid: bool
    header: dict[str, Any] | None = None
    payload: dict[str, Any] | None = None
    error: str | None = None
    error_type: str | None = None
    # Absent key: the check was never reached.
    validation_details: dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "header": self.header,
            "payload": self.payload,
            "error": self.error,
            "errorType": self.error_type,
            "validationDetails": dict(self.validation_details),
        }


@dataclass(frozen=True)
class CertificateExtension:
    name: str
    value: str
    critical: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "value": self.value, "critical": self.critical}


@dataclass(frozen=True)
class CertificateView:
    format: str
    encoded_length: int
    pem: str
    subject: str = NOT_AVAILABLE
    issuer: str = NOT_AVAILABLE
    serial_number: str = NOT_AVAILABLE
    version: str = NOT_AVAILABLE
    valid_from: str = NOT_AVAILABLE
    valid_to: str = NOT_AVAILABLE
    fingerprint: str = NOT_AVAILABLE
    public_key_algorithm: str = NOT_AVAILABLE
    public_key_size: int | None = None
    extensions: tuple[CertificateExtension, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "format": self.format,
            "encodedLength": self.encoded_length,
            "subject": self.subject,
            "issuer": self.issuer,
            "serialNumber": self.serial_number,
            "version": self.version,
            "validFrom": self.valid_from,
            "validTo": self.valid_to,
            "fingerprint": self.fingerprint,
            "extensions": [ext.to_dict() for ext in self.extensions],
            "publicKeyInfo": {
                "algorithm": self.public_key_algorithm,
                "keySize": self.public_key_size,
            },
            "pem": self.pem,
        }


@dataclass(frozen=True)
class CertificateDecodeResult:
    decoded: CertificateView | None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "decoded": self.decoded.to_dict() if self.decoded is not None else None,
            "error": self.error,
        }
