"""Certificate views.

``decode_certificate`` is a heuristic extractor: it reads conventional
``openssl x509 -text`` markers when they are present and otherwise scans the
DER bytes for well-known patterns. It always returns a view for a PEM input;
fields it cannot find read "Not available".

``decode_certificate_strict`` is the separate, exact path backed by
``cryptography.x509``. It fails when the certificate does not parse.
"""

from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime
from typing import Any

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, ExtensionOID

from .codec import b64_decode_bytes
from .errors import FormatError
from .models import (
    NOT_AVAILABLE,
    CertificateDecodeResult,
    CertificateExtension,
    CertificateView,
)

logger = logging.getLogger(__name__)

PEM_BEGIN = "-----BEGIN CERTIFICATE-----"
PEM_END = "-----END CERTIFICATE-----"
FORMAT_PEM = "PEM"
FORMAT_DER = "DER (Base64)"
INVALID_CERT_FORMAT = "Invalid certificate format: expected PEM or Base64-encoded DER"

_WHITESPACE = re.compile(r"\s+")

_TEXT_MARKERS: dict[str, list[re.Pattern[str]]] = {
    "subject": [
        re.compile(r"^\s*subject\s*=\s*(.+?)\s*$", re.IGNORECASE | re.MULTILINE),
        re.compile(r"^\s*Subject:\s*(.+?)\s*$", re.MULTILINE),
    ],
    "issuer": [
        re.compile(r"^\s*issuer\s*=\s*(.+?)\s*$", re.IGNORECASE | re.MULTILINE),
        re.compile(r"^\s*Issuer:\s*(.+?)\s*$", re.MULTILINE),
    ],
    "serial_number": [
        re.compile(r"Serial Number:[ \t]*\n?[ \t]*([^\n]+?)\s*$", re.MULTILINE),
        re.compile(r"^\s*serial\s*=\s*([0-9A-Fa-f]+)\s*$", re.MULTILINE),
    ],
    "version": [re.compile(r"^\s*Version:\s*([^\n]+?)\s*$", re.MULTILINE)],
    "valid_from": [
        re.compile(r"Not Before\s*:\s*([^\n]+?)\s*$", re.MULTILINE),
        re.compile(r"^\s*notBefore\s*=\s*([^\n]+?)\s*$", re.MULTILINE),
    ],
    "valid_to": [
        re.compile(r"Not After\s*:\s*([^\n]+?)\s*$", re.MULTILINE),
        re.compile(r"^\s*notAfter\s*=\s*([^\n]+?)\s*$", re.MULTILINE),
    ],
    "public_key_algorithm": [
        re.compile(r"Public Key Algorithm:\s*([^\n]+?)\s*$", re.MULTILINE),
    ],
    "fingerprint": [re.compile(r"Fingerprint\s*=\s*([0-9A-Fa-f:]+)")],
}
_TEXT_KEY_SIZE = re.compile(r"Public-Key:\s*\((\d+) bit\)")
_TEXT_EXTENSIONS = re.compile(r"X509v3 extensions:[ \t]*\n")
_TEXT_EXTENSION_HEADER = re.compile(r"^(?P<name>[^:]+):\s*(?P<critical>critical)?\s*$")

# DER attribute type OIDs (2.5.4.x) as they appear after the 06 03 OID header.
_NAME_ATTRIBUTES = {
    0x03: "CN",
    0x06: "C",
    0x07: "L",
    0x08: "ST",
    0x0A: "O",
    0x0B: "OU",
}
_DER_NAME = re.compile(
    rb"\x06\x03\x55\x04([\x03\x06\x07\x08\x0a\x0b])([\x0c\x13\x14\x16])([\x01-\x7f])"
)
_DER_TIME = re.compile(rb"\x17\x0d(\d{12})Z|\x18\x0f(\d{14})Z")
_DER_VERSION_SERIAL = re.compile(rb"\xa0\x03\x02\x01([\x00-\x02])\x02([\x01-\x15])")
_DER_KEY_ALGORITHMS = (
    (b"\x06\x09\x2a\x86\x48\x86\xf7\x0d\x01\x01\x01", "rsaEncryption"),
    (b"\x06\x07\x2a\x86\x48\xce\x3d\x02\x01", "id-ecPublicKey"),
    (b"\x06\x03\x2b\x65\x70", "ED25519"),
    (b"\x06\x03\x2b\x65\x71", "ED448"),
)
_DER_EC_CURVES = (
    (b"\x06\x08\x2a\x86\x48\xce\x3d\x03\x01\x07", 256),
    (b"\x06\x05\x2b\x81\x04\x00\x22", 384),
    (b"\x06\x05\x2b\x81\x04\x00\x23", 521),
)
_DER_RSA_MODULUS = re.compile(rb"\x02(?:\x81(.)|\x82(..))", re.DOTALL)
_DER_EXTENSION = re.compile(rb"\x06\x03\x55\x1d(.)(\x01\x01\xff)?\x04", re.DOTALL)
_EXTENSION_NAMES = {
    0x0E: "Subject Key Identifier",
    0x0F: "Key Usage",
    0x11: "Subject Alternative Name",
    0x13: "Basic Constraints",
    0x1F: "CRL Distribution Points",
    0x20: "Certificate Policies",
    0x23: "Authority Key Identifier",
    0x25: "Extended Key Usage",
}


def _wrap_pem(body: str) -> str:
    lines = [body[i : i + 64] for i in range(0, len(body), 64)]
    return "\n".join([PEM_BEGIN, *lines, PEM_END]) + "\n"


def _prepare(text: str) -> tuple[str, str, bytes | None]:
    """Return (format, base64 body, DER bytes or None).

    Raises FormatError only for non-PEM input that is not Base64.
    """
    if PEM_BEGIN in text:
        body = text.split(PEM_BEGIN, 1)[1].split(PEM_END, 1)[0]
        body = _WHITESPACE.sub("", body)
        try:
            der: bytes | None = b64_decode_bytes(body)
        except FormatError:
            logger.debug("PEM body is not valid Base64; continuing with text markers only")
            der = None
        return FORMAT_PEM, body, der or None

    body = _WHITESPACE.sub("", text)
    try:
        der = b64_decode_bytes(body)
    except FormatError as exc:
        raise FormatError(INVALID_CERT_FORMAT) from exc
    if not der:
        raise FormatError(INVALID_CERT_FORMAT)
    return FORMAT_DER, body, der


def _colon_hex(data: bytes, *, upper: bool = False) -> str:
    text = data.hex()
    if upper:
        text = text.upper()
    return ":".join(text[i : i + 2] for i in range(0, len(text), 2))


def _format_time(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S UTC")


def _parse_der_time(utc: bytes | None, generalized: bytes | None) -> str:
    if utc is not None:
        raw = utc.decode("ascii")
        century = "19" if int(raw[:2]) >= 50 else "20"
        raw = century + raw
    else:
        raw = (generalized or b"").decode("ascii")
    return _format_time(datetime.strptime(raw, "%Y%m%d%H%M%S"))


def _read_length(data: bytes, pos: int) -> tuple[int, int]:
    first = data[pos]
    if first < 0x80:
        return first, pos + 1
    count = first & 0x7F
    return int.from_bytes(data[pos + 1 : pos + 1 + count], "big"), pos + 1 + count


def _text_extensions(text: str) -> list[CertificateExtension]:
    match = _TEXT_EXTENSIONS.search(text)
    if match is None:
        return []
    extensions: list[CertificateExtension] = []
    header_indent: int | None = None
    current: dict[str, Any] | None = None
    for line in text[match.end() :].splitlines():
        if not line.strip():
            break
        indent = len(line) - len(line.lstrip())
        if header_indent is None:
            header_indent = indent
        if indent < header_indent:
            break
        header = _TEXT_EXTENSION_HEADER.match(line.strip())
        if indent == header_indent and header is not None:
            if current is not None:
                extensions.append(CertificateExtension(**current))
            current = {
                "name": header.group("name").removeprefix("X509v3 ").strip(),
                "value": "",
                "critical": header.group("critical") is not None,
            }
        elif current is not None and indent > header_indent:
            current["value"] = ", ".join(filter(None, [current["value"], line.strip()]))
        else:
            break
    if current is not None:
        extensions.append(CertificateExtension(**current))
    return [
        ext if ext.value else CertificateExtension(ext.name, NOT_AVAILABLE, ext.critical)
        for ext in extensions
    ]


def _from_text_markers(text: str) -> dict[str, Any]:
    found: dict[str, Any] = {}
    for field_name, patterns in _TEXT_MARKERS.items():
        for pattern in patterns:
            match = pattern.search(text)
            if match:
                found[field_name] = match.group(1).strip()
                break
    key_size = _TEXT_KEY_SIZE.search(text)
    if key_size:
        found["public_key_size"] = int(key_size.group(1))
    extensions = _text_extensions(text)
    if extensions:
        found["extensions"] = tuple(extensions)
    return found


def _der_extensions(der: bytes) -> list[CertificateExtension]:
    extensions: list[CertificateExtension] = []
    for match in _DER_EXTENSION.finditer(der):
        name = _EXTENSION_NAMES.get(match.group(1)[0])
        if name is None:
            continue
        try:
            length, start = _read_length(der, match.end())
        except IndexError:
            continue
        content = der[start : start + length]
        value = NOT_AVAILABLE
        if name == "Basic Constraints":
            value = "CA:TRUE" if b"\x01\x01\xff" in content else "CA:FALSE"
        elif name == "Subject Alternative Name":
            names = _der_dns_names(content)
            if names:
                value = ", ".join(names)
        extensions.append(CertificateExtension(name, value, match.group(2) is not None))
    return extensions


def _der_dns_names(content: bytes) -> list[str]:
    # GeneralNames SEQUENCE; dNSName entries carry the context tag 0x82.
    if not content or content[0] != 0x30:
        return []
    length, pos = _read_length(content, 1)
    end = min(len(content), pos + length)
    names: list[str] = []
    while pos < end:
        tag = content[pos]
        size, value_pos = _read_length(content, pos + 1)
        if tag == 0x82:
            names.append("DNS:" + content[value_pos : value_pos + size].decode("ascii", "replace"))
        pos = value_pos + size
    return names


def _from_der_patterns(der: bytes) -> dict[str, Any]:
    found: dict[str, Any] = {"fingerprint": _colon_hex(hashlib.sha256(der).digest(), upper=True)}

    prologue = _DER_VERSION_SERIAL.search(der, 0, 64)
    if prologue:
        version = prologue.group(1)[0]
        found["version"] = f"{version + 1} (0x{version:x})"
        start = prologue.end()
        found["serial_number"] = _colon_hex(der[start : start + prologue.group(2)[0]])

    times = list(_DER_TIME.finditer(der))
    validity_pos = times[0].start() if times else None
    if len(times) >= 2:
        found["valid_from"] = _parse_der_time(times[0].group(1), times[0].group(2))
        found["valid_to"] = _parse_der_time(times[1].group(1), times[1].group(2))

    key_pos: int | None = None
    for oid, name in _DER_KEY_ALGORITHMS:
        pos = der.find(oid)
        if pos >= 0 and (key_pos is None or pos < key_pos):
            key_pos = pos
            found["public_key_algorithm"] = name
    if key_pos is not None:
        found.update(_der_key_size(der, key_pos, found["public_key_algorithm"]))

    # Issuer attributes sit before the validity window, subject attributes between it and the key.
    issuer: list[str] = []
    subject: list[str] = []
    for match in _DER_NAME.finditer(der):
        if key_pos is not None and match.start() > key_pos:
            break
        length = match.group(3)[0]
        raw = der[match.end() : match.end() + length]
        label = _NAME_ATTRIBUTES[match.group(1)[0]]
        entry = f"{label}={raw.decode('utf-8', 'replace')}"
        if validity_pos is not None and match.start() > validity_pos:
            subject.append(entry)
        else:
            issuer.append(entry)
    if issuer:
        found["issuer"] = ", ".join(issuer)
    if subject:
        found["subject"] = ", ".join(subject)

    extensions = _der_extensions(der)
    if extensions:
        found["extensions"] = tuple(extensions)
    return found


def _der_key_size(der: bytes, key_pos: int, algorithm: str) -> dict[str, Any]:
    if algorithm == "ED25519":
        return {"public_key_size": 256}
    if algorithm == "ED448":
        return {"public_key_size": 456}
    window = der[key_pos : key_pos + 64]
    if algorithm == "id-ecPublicKey":
        for oid, bits in _DER_EC_CURVES:
            if oid in window:
                return {"public_key_size": bits}
        return {}
    modulus = _DER_RSA_MODULUS.search(der, key_pos)
    if modulus is None:
        return {}
    length_bytes = modulus.group(1) or modulus.group(2)
    length = int.from_bytes(length_bytes, "big")
    if der[modulus.end() : modulus.end() + 1] == b"\x00":
        length -= 1
    return {"public_key_size": length * 8}


def decode_certificate(text: str) -> CertificateDecodeResult:
    """Best-effort view of a PEM or Base64 DER certificate."""
    if not isinstance(text, str) or not text.strip():
        return CertificateDecodeResult(decoded=None, error="certificate text is empty")
    try:
        fmt, body, der = _prepare(text)
    except FormatError as exc:
        return CertificateDecodeResult(decoded=None, error=str(exc))

    fields: dict[str, Any] = {}
    if der is not None:
        try:
            fields.update(_from_der_patterns(der))
        except (IndexError, ValueError) as exc:
            # A malformed byte pattern only costs the fields it would have produced.
            logger.debug("DER pattern scan stopped early: %s", exc)
    # Textual markers are authoritative when present.
    fields.update(_from_text_markers(text))

    view = CertificateView(format=fmt, encoded_length=len(body), pem=_wrap_pem(body), **fields)
    return CertificateDecodeResult(decoded=view)


_ID_CE_PREFIX = "2.5.29."
_USAGE_NAMES = {
    ExtendedKeyUsageOID.SERVER_AUTH: "serverAuth",
    ExtendedKeyUsageOID.CLIENT_AUTH: "clientAuth",
    ExtendedKeyUsageOID.CODE_SIGNING: "codeSigning",
    ExtendedKeyUsageOID.EMAIL_PROTECTION: "emailProtection",
    ExtendedKeyUsageOID.TIME_STAMPING: "timeStamping",
    ExtendedKeyUsageOID.OCSP_SIGNING: "OCSPSigning",
}


def _extension_name(oid: x509.ObjectIdentifier) -> str:
    dotted = oid.dotted_string
    if dotted.startswith(_ID_CE_PREFIX):
        arc = dotted[len(_ID_CE_PREFIX) :]
        if arc.isdigit() and int(arc) in _EXTENSION_NAMES:
            return _EXTENSION_NAMES[int(arc)]
    return dotted


def _describe_extension(ext: x509.Extension[Any]) -> tuple[str, str]:
    value = ext.value
    name = _extension_name(ext.oid)
    if isinstance(value, x509.BasicConstraints):
        text = f"CA:{'TRUE' if value.ca else 'FALSE'}"
        if value.path_length is not None:
            text += f", pathlen:{value.path_length}"
        return name, text
    if isinstance(value, x509.SubjectAlternativeName):
        parts = [f"DNS:{n}" for n in value.get_values_for_type(x509.DNSName)]
        parts += [f"IP:{ip}" for ip in value.get_values_for_type(x509.IPAddress)]
        return name, ", ".join(parts) or NOT_AVAILABLE
    if isinstance(value, x509.KeyUsage):
        flags = [
            "digital_signature",
            "content_commitment",
            "key_encipherment",
            "data_encipherment",
            "key_agreement",
            "key_cert_sign",
            "crl_sign",
        ]
        enabled = [flag for flag in flags if getattr(value, flag)]
        return name, ", ".join(enabled) or NOT_AVAILABLE
    if isinstance(value, x509.ExtendedKeyUsage):
        return name, ", ".join(_USAGE_NAMES.get(oid, oid.dotted_string) for oid in value)
    if ext.oid == ExtensionOID.SUBJECT_KEY_IDENTIFIER:
        return name, _colon_hex(value.digest, upper=True)
    return name, NOT_AVAILABLE


def _public_key_info(key: Any) -> tuple[str, int | None]:
    if isinstance(key, rsa.RSAPublicKey):
        return "rsaEncryption", key.key_size
    if isinstance(key, ec.EllipticCurvePublicKey):
        return "id-ecPublicKey", key.curve.key_size
    if isinstance(key, ed25519.Ed25519PublicKey):
        return "ED25519", 256
    if isinstance(key, ed448.Ed448PublicKey):
        return "ED448", 456
    return type(key).__name__, None


def decode_certificate_strict(text: str) -> CertificateDecodeResult:
    """Exact view parsed with ``cryptography.x509``; errors instead of guessing."""
    if not isinstance(text, str) or not text.strip():
        return CertificateDecodeResult(decoded=None, error="certificate text is empty")
    try:
        fmt, body, der = _prepare(text)
    except FormatError as exc:
        return CertificateDecodeResult(decoded=None, error=str(exc))
    if der is None:
        return CertificateDecodeResult(decoded=None, error=INVALID_CERT_FORMAT)

    try:
        cert = x509.load_der_x509_certificate(der)
        subject = cert.subject.rfc4514_string()
        issuer = cert.issuer.rfc4514_string()
        algorithm, key_size = _public_key_info(cert.public_key())
        extensions = tuple(
            CertificateExtension(*_describe_extension(ext), critical=ext.critical)
            for ext in cert.extensions
        )
    except (ValueError, x509.DuplicateExtension, UnsupportedAlgorithm) as exc:
        return CertificateDecodeResult(decoded=None, error=f"Could not parse certificate: {exc}")

    serial_hex = f"{cert.serial_number:x}"
    if len(serial_hex) % 2:
        serial_hex = "0" + serial_hex
    version = cert.version.value
    view = CertificateView(
        format=fmt,
        encoded_length=len(body),
        pem=_wrap_pem(body),
        subject=subject or NOT_AVAILABLE,
        issuer=issuer or NOT_AVAILABLE,
        serial_number=_colon_hex(bytes.fromhex(serial_hex)),
        version=f"{version + 1} (0x{version:x})",
        valid_from=_format_time(cert.not_valid_before_utc),
        valid_to=_format_time(cert.not_valid_after_utc),
        fingerprint=_colon_hex(cert.fingerprint(hashes.SHA256()), upper=True),
        public_key_algorithm=algorithm,
        public_key_size=key_size,
        extensions=extensions,
    )
    return CertificateDecodeResult(decoded=view)
