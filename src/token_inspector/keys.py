from __future__ import annotations

import copy
import hashlib
import json
import logging
import threading
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable
from typing import Any, cast

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, rsa
from cryptography.hazmat.primitives.serialization import (
    load_pem_private_key,
    load_pem_public_key,
)
from jwt import algorithms
from jwt import exceptions as jwt_exceptions

from .codec import b64url_encode_bytes
from .config import DEFAULT_JWKS_MAX_BYTES, Settings
from .errors import KeyFetchError, KeyImportError, KeyNotFoundError
from .models import KeySource

logger = logging.getLogger(__name__)

KeySetFetcher = Callable[..., dict[str, Any]]

_JWK_LOADERS: dict[str, Any] = {
    "oct": algorithms.HMACAlgorithm,
    "RSA": algorithms.RSAAlgorithm,
    "EC": algorithms.ECAlgorithm,
    "OKP": algorithms.OKPAlgorithm,
}

_KEY_CLASSES: dict[str, tuple[type, ...]] = {
    "RSA": (rsa.RSAPrivateKey, rsa.RSAPublicKey),
    "EC": (ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey),
    "OKP": (
        ed25519.Ed25519PrivateKey,
        ed25519.Ed25519PublicKey,
        ed448.Ed448PrivateKey,
        ed448.Ed448PublicKey,
    ),
}

_PRIVATE_KEY_CLASSES = (
    rsa.RSAPrivateKey,
    ec.EllipticCurvePrivateKey,
    ed25519.Ed25519PrivateKey,
    ed448.Ed448PrivateKey,
)

# RFC 7638 required members per key type.
_THUMBPRINT_MEMBERS: dict[str, tuple[str, ...]] = {
    "RSA": ("e", "kty", "n"),
    "EC": ("crv", "kty", "x", "y"),
    "OKP": ("crv", "kty", "x"),
    "oct": ("k", "kty"),
}

SUPPORTED_ALGORITHMS = (
    "HS256",
    "HS384",
    "HS512",
    "RS256",
    "RS384",
    "RS512",
    "PS256",
    "PS384",
    "PS512",
    "ES256",
    "ES384",
    "ES512",
    "EdDSA",
)


def _looks_like_pem(text: str) -> bool:
    return "-----BEGIN" in text


def _looks_like_json(text: str) -> bool:
    return text.strip().startswith("{")


def expected_kty_for_alg(alg: str) -> str:
    if alg not in SUPPORTED_ALGORITHMS:
        if alg == "none":
            raise KeyImportError("refusing to use a key with alg=none")
        raise KeyImportError(f"unsupported algorithm: {alg}")
    if alg.startswith("HS"):
        return "oct"
    if alg.startswith(("RS", "PS")):
        return "RSA"
    if alg.startswith("ES"):
        return "EC"
    return "OKP"


def _check_key_family(key: Any, alg: str, expected_kty: str) -> None:
    if not isinstance(key, _KEY_CLASSES[expected_kty]):
        raise KeyImportError(f"{type(key).__name__} cannot be used with algorithm {alg}")


def _bind_usage(key: Any, *, private: bool) -> Any:
    is_private = isinstance(key, _PRIVATE_KEY_CLASSES)
    if private and not is_private:
        raise KeyImportError("signing requires a private key")
    if not private and is_private:
        return key.public_key()
    return key


def _import_jwk(jwk: dict[str, Any], alg: str, expected_kty: str, *, private: bool) -> Any:
    kty = jwk.get("kty")
    if not isinstance(kty, str) or not kty.strip():
        raise KeyImportError("JWK missing kty")
    if kty != expected_kty:
        raise KeyImportError(
            f"JWK kty {kty} does not match algorithm {alg} (expected {expected_kty})"
        )
    jwk_alg = jwk.get("alg")
    if isinstance(jwk_alg, str) and jwk_alg and jwk_alg != alg:
        raise KeyImportError(f"JWK alg {jwk_alg} does not match requested algorithm {alg}")

    try:
        key = _JWK_LOADERS[kty].from_jwk(json.dumps(jwk))
    except (jwt_exceptions.InvalidKeyError, KeyError, TypeError, ValueError) as exc:
        raise KeyImportError(f"invalid {kty} JWK: {exc}") from exc

    if kty == "oct":
        if not key:
            raise KeyImportError("oct JWK has an empty secret")
        return key
    _check_key_family(key, alg, expected_kty)
    return _bind_usage(key, private=private)


def _import_pem(text: str, alg: str, expected_kty: str, *, private: bool) -> Any:
    data = text.encode("utf-8")
    key: Any
    try:
        if private:
            key = load_pem_private_key(data, password=None)
        elif "BEGIN CERTIFICATE" in text:
            key = x509.load_pem_x509_certificate(data).public_key()
        else:
            try:
                key = load_pem_public_key(data)
            except ValueError:
                key = load_pem_private_key(data, password=None)
    except (TypeError, ValueError, UnsupportedAlgorithm) as exc:
        if private:
            raise KeyImportError(
                f"signing with {alg} requires an unencrypted PEM private key"
            ) from exc
        raise KeyImportError(f"could not parse PEM key: {exc}") from exc
    _check_key_family(key, alg, expected_kty)
    return _bind_usage(key, private=private)


def import_key(material: dict[str, Any] | str, alg: str, *, private: bool = False) -> Any:
    expected_kty = expected_kty_for_alg(alg)

    if isinstance(material, dict):
        return _import_jwk(material, alg, expected_kty, private=private)
    if not isinstance(material, str):
        raise KeyImportError("key must be a JWK object or text")

    if _looks_like_json(material):
        try:
            obj = json.loads(material)
        except json.JSONDecodeError as exc:
            raise KeyImportError("key looks like JSON but does not parse") from exc
        if not isinstance(obj, dict):
            raise KeyImportError("JWK must be an object")
        if "keys" in obj:
            raise KeyImportError("got a key set where a single key was expected")
        return _import_jwk(cast(dict[str, Any], obj), alg, expected_kty, private=private)

    if expected_kty == "oct":
        if _looks_like_pem(material):
            raise KeyImportError("refusing to use PEM as HMAC secret")
        if not material:
            raise KeyImportError("HMAC secret is empty")
        return material.encode("utf-8")

    if not _looks_like_pem(material):
        raise KeyImportError(f"{alg} requires a PEM or JWK key, not a shared secret")
    return _import_pem(material.strip(), alg, expected_kty, private=private)


def select_jwk(key_set: dict[str, Any], kid: str | None) -> dict[str, Any]:
    keys = key_set.get("keys")
    candidates = [item for item in keys if isinstance(item, dict)] if isinstance(keys, list) else []
    if not kid:
        raise KeyNotFoundError("token header has no kid; cannot pick a key from the key set")
    for jwk in candidates:
        if jwk.get("kid") == kid:
            return cast(dict[str, Any], jwk)
    raise KeyNotFoundError(f"no key with kid {kid!r} in key set ({len(candidates)} keys)")


def _get_json(url: str, *, timeout: float | None, max_bytes: int, label: str) -> Any:
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise KeyFetchError(f"{label} url must be http(s): {url}")

    logger.debug("fetching %s from %s", label, url)
    req = urllib.request.Request(url, headers={"Accept": "application/json"})
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response:
            body = response.read(max_bytes + 1)
    except urllib.error.HTTPError as exc:
        exc.close()
        raise KeyFetchError(f"failed to fetch {label}: HTTP {exc.code} {exc.reason}") from exc
    except urllib.error.URLError as exc:
        raise KeyFetchError(f"failed to fetch {label}: {exc.reason}") from exc
    except OSError as exc:
        raise KeyFetchError(f"failed to fetch {label}: {exc}") from exc
    if len(body) > max_bytes:
        raise KeyFetchError(f"{label} response too large (limit {max_bytes} bytes)")

    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise KeyFetchError(f"{label} url did not return valid JSON: {exc}") from exc


def fetch_jwks(
    url: str,
    *,
    timeout: float | None = None,
    max_bytes: int = DEFAULT_JWKS_MAX_BYTES,
) -> dict[str, Any]:
    obj = _get_json(url, timeout=timeout, max_bytes=max_bytes, label="JWKS")
    if not isinstance(obj, dict) or not isinstance(obj.get("keys"), list):
        # Well-formed JSON of another shape means "no keys", not a fetch failure.
        logger.warning("JWKS at %s has no keys list; treating it as empty", url)
        return {"keys": []}
    return cast(dict[str, Any], obj)


class JWKSCache:
    """Fetches each URL at most once; failed fetches are not stored."""

    def __init__(self, fetcher: KeySetFetcher | None = None) -> None:
        self._fetcher = fetcher or fetch_jwks
        self._entries: dict[str, dict[str, Any]] = {}
        self._url_locks: dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def __contains__(self, url: object) -> bool:
        return url in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def _lock_for(self, url: str) -> threading.Lock:
        with self._lock:
            return self._url_locks.setdefault(url, threading.Lock())

    def get(
        self,
        url: str,
        *,
        timeout: float | None = None,
        max_bytes: int = DEFAULT_JWKS_MAX_BYTES,
    ) -> dict[str, Any]:
        with self._lock_for(url):
            entry = self._entries.get(url)
            if entry is None:
                entry = self._fetcher(url, timeout=timeout, max_bytes=max_bytes)
                self._entries[url] = entry
            else:
                logger.debug("key set cache hit for %s", url)
        return copy.deepcopy(entry)


def load_key_set(
    url: str,
    *,
    cache: JWKSCache | None = None,
    settings: Settings | None = None,
) -> dict[str, Any]:
    settings = settings or Settings()
    if cache is not None:
        return cache.get(url, timeout=settings.fetch_timeout, max_bytes=settings.jwks_max_bytes)
    return fetch_jwks(url, timeout=settings.fetch_timeout, max_bytes=settings.jwks_max_bytes)


def resolve_key(
    source: KeySource,
    header: dict[str, Any],
    *,
    cache: JWKSCache | None = None,
    settings: Settings | None = None,
) -> Any:
    # A single key wins over an inline key set, which wins over a remote one.
    alg = header.get("alg")
    if not isinstance(alg, str) or not alg:
        raise KeyImportError("token header has no alg")

    if source.key is not None:
        logger.debug("using single key for %s", alg)
        return import_key(source.key, alg)

    if source.key_set is not None:
        key_set = source.key_set
    else:
        key_set = load_key_set(cast(str, source.key_set_url), cache=cache, settings=settings)

    kid = header.get("kid")
    jwk = select_jwk(key_set, kid if isinstance(kid, str) else None)
    logger.debug("selected key %s from %s", kid, source.kind)
    return import_key(jwk, alg)


def jwk_from_pem(pem_text: str, kid: str | None = None) -> dict[str, Any]:
    """Public JWK for a PEM public key, private key or certificate."""
    data = pem_text.strip().encode("utf-8")
    try:
        if b"BEGIN CERTIFICATE" in data:
            key: Any = x509.load_pem_x509_certificate(data).public_key()
        else:
            try:
                key = load_pem_public_key(data)
            except ValueError:
                key = load_pem_private_key(data, password=None).public_key()
    except (TypeError, ValueError, UnsupportedAlgorithm) as exc:
        raise KeyImportError(f"could not parse PEM key: {exc}") from exc

    if isinstance(key, rsa.RSAPublicKey):
        jwk = algorithms.RSAAlgorithm.to_jwk(key, as_dict=True)
    elif isinstance(key, ec.EllipticCurvePublicKey):
        jwk = algorithms.ECAlgorithm.to_jwk(key, as_dict=True)
    elif isinstance(key, (ed25519.Ed25519PublicKey, ed448.Ed448PublicKey)):
        jwk = algorithms.OKPAlgorithm.to_jwk(key, as_dict=True)
    else:
        raise KeyImportError(f"unsupported key type for JWK conversion: {type(key).__name__}")

    jwk = dict(jwk)
    if kid:
        jwk["kid"] = kid
    return jwk


def jwks_from_pem(pem_text: str, kid: str | None = None) -> dict[str, Any]:
    return {"keys": [jwk_from_pem(pem_text, kid=kid)]}


def jwk_thumbprint_sha256(jwk: dict[str, Any]) -> str:
    kty = jwk.get("kty")
    if not isinstance(kty, str) or kty not in _THUMBPRINT_MEMBERS:
        raise ValueError(f"unsupported JWK kty for thumbprint: {kty}")
    members: dict[str, str] = {}
    for name in _THUMBPRINT_MEMBERS[kty]:
        value = jwk.get(name)
        if not isinstance(value, str) or not value:
            raise ValueError(f"{kty} JWK missing {name}")
        members[name] = value
    canonical = json.dumps(members, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return b64url_encode_bytes(hashlib.sha256(canonical).digest())


def guess_jwks_url(issuer: Any) -> str | None:
    if not isinstance(issuer, str):
        return None
    parsed = urllib.parse.urlparse(issuer.strip())
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}/.well-known/jwks.json"


def discover_jwks_uri(issuer: str, *, settings: Settings | None = None) -> str:
    settings = settings or Settings()
    url = issuer.strip().rstrip("/") + "/.well-known/openid-configuration"
    doc = _get_json(
        url,
        timeout=settings.fetch_timeout,
        max_bytes=settings.jwks_max_bytes,
        label="OIDC discovery document",
    )
    jwks_uri = doc.get("jwks_uri") if isinstance(doc, dict) else None
    if not isinstance(jwks_uri, str) or not jwks_uri.startswith(("http://", "https://")):
        raise KeyFetchError("OIDC discovery document has no http(s) jwks_uri")
    return jwks_uri
