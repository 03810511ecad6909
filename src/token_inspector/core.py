from __future__ import annotations

import json
import logging
import math
import time
from typing import Any

import jwt
from jwt import exceptions as jwt_exceptions

from .codec import b64url_decode_bytes
from .config import Settings
from .errors import (
    ClaimError,
    FormatError,
    KeyFetchError,
    KeyImportError,
    KeyNotFoundError,
    SignatureError,
    TokenInspectorError,
)
from .keys import JWKSCache, guess_jwks_url, import_key, resolve_key
from .models import (
    CHECK_AUDIENCE,
    CHECK_EXPIRY,
    CHECK_ISSUER,
    CHECK_KEY_ID,
    CHECK_SIGNATURE,
    DecodeResult,
    KeySource,
    SignResult,
    VerificationResult,
)

logger = logging.getLogger(__name__)

INVALID_TOKEN_FORMAT = "Invalid token format"
DEFAULT_EXPIRES_IN = 3600


def _decode_segment(segment: str, label: str) -> dict[str, Any]:
    try:
        raw = b64url_decode_bytes(segment)
    except FormatError as exc:
        raise FormatError(f"Invalid token {label}: {exc}") from exc
    try:
        obj = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise FormatError(f"Invalid token {label}: not valid JSON ({exc})") from exc
    if not isinstance(obj, dict):
        raise FormatError(f"Invalid token {label}: must be a JSON object")
    return obj


def decode_token(token: str) -> DecodeResult:
    if not isinstance(token, str):
        return DecodeResult(header=None, payload=None, error=INVALID_TOKEN_FORMAT)
    parts = token.strip().split(".")
    if len(parts) != 3:
        return DecodeResult(header=None, payload=None, error=INVALID_TOKEN_FORMAT)

    try:
        header = _decode_segment(parts[0], "header")
    except FormatError as exc:
        return DecodeResult(header=None, payload=None, error=str(exc))
    try:
        payload = _decode_segment(parts[1], "payload")
    except FormatError as exc:
        return DecodeResult(header=header, payload=None, error=str(exc))
    return DecodeResult(header=header, payload=payload)


def _expiry_seconds(expires_in: Any) -> int:
    # Numbers are used as given; strings must hold an integer and "0" falls back too.
    if isinstance(expires_in, bool):
        return DEFAULT_EXPIRES_IN
    if isinstance(expires_in, float) and not math.isfinite(expires_in):
        return DEFAULT_EXPIRES_IN
    if isinstance(expires_in, (int, float)):
        return int(expires_in)
    if isinstance(expires_in, str):
        try:
            return int(expires_in.strip()) or DEFAULT_EXPIRES_IN
        except ValueError:
            return DEFAULT_EXPIRES_IN
    return DEFAULT_EXPIRES_IN


def _jwk_kid(key: dict[str, Any] | str) -> str | None:
    obj: Any = key
    if isinstance(key, str) and key.strip().startswith("{"):
        try:
            obj = json.loads(key)
        except json.JSONDecodeError:
            return None
    kid = obj.get("kid") if isinstance(obj, dict) else None
    return kid if isinstance(kid, str) and kid else None


def sign_token(
    payload: dict[str, Any],
    key: dict[str, Any] | str,
    *,
    algorithm: str = "RS256",
    expires_in: int | float | str = DEFAULT_EXPIRES_IN,
    kid: str | None = None,
    headers: dict[str, Any] | None = None,
) -> SignResult:
    # exp is always recomputed; failures come back with an empty token.
    if not isinstance(payload, dict):
        return SignResult(token="", error="payload must be a JSON object")
    try:
        signing_key = import_key(key, algorithm, private=True)
    except KeyImportError as exc:
        return SignResult(token="", error=str(exc))

    claims = dict(payload)
    claims["exp"] = int(time.time()) + _expiry_seconds(expires_in)

    header_fields = {k: v for k, v in (headers or {}).items() if k not in {"alg", "kid"}}
    key_id = kid or _jwk_kid(key)
    if key_id:
        header_fields["kid"] = key_id

    try:
        token = jwt.encode(
            claims,
            key=signing_key,
            algorithm=algorithm,
            headers=header_fields or None,
        )
    except (TypeError, ValueError, jwt_exceptions.PyJWTError) as exc:
        return SignResult(token="", error=f"could not sign token: {exc}")
    return SignResult(token=token)


def _classify_jwt_error(exc: jwt_exceptions.PyJWTError) -> TokenInspectorError:
    if isinstance(exc, jwt_exceptions.ExpiredSignatureError):
        return ClaimError("Token has expired", check=CHECK_EXPIRY)
    if isinstance(exc, jwt_exceptions.ImmatureSignatureError):
        return ClaimError("Token is not yet valid", check=CHECK_EXPIRY)
    if isinstance(exc, jwt_exceptions.InvalidIssuedAtError):
        return ClaimError("iat claim is not an integer", check=CHECK_EXPIRY)
    if isinstance(exc, jwt_exceptions.InvalidAudienceError):
        return ClaimError(str(exc), check=CHECK_AUDIENCE)
    if isinstance(exc, jwt_exceptions.InvalidIssuerError):
        return ClaimError(str(exc), check=CHECK_ISSUER)
    if isinstance(exc, jwt_exceptions.MissingRequiredClaimError):
        check = {"aud": CHECK_AUDIENCE, "iss": CHECK_ISSUER}.get(exc.claim, CHECK_EXPIRY)
        return ClaimError(str(exc), check=check)
    if isinstance(exc, jwt_exceptions.InvalidSignatureError):
        return SignatureError("Signature verification failed")
    if isinstance(exc, jwt_exceptions.DecodeError):
        msg = str(exc).lower()
        # PyJWT reports non-integer time claims as DecodeError, after the signature passed.
        if "(exp)" in msg:
            return ClaimError("exp claim is not an integer", check=CHECK_EXPIRY)
        if "(nbf)" in msg:
            return ClaimError("nbf claim is not an integer", check=CHECK_EXPIRY)
        return SignatureError(f"Invalid token: {exc}")
    return SignatureError(str(exc) or type(exc).__name__)


def _failed(
    header: dict[str, Any] | None,
    payload: dict[str, Any] | None,
    exc: TokenInspectorError,
    details: dict[str, bool],
) -> VerificationResult:
    logger.debug("verification failed: %s: %s", type(exc).__name__, exc)
    return VerificationResult(
        is_valid=False,
        header=header,
        payload=payload,
        error=str(exc),
        error_type=type(exc).__name__,
        validation_details=details,
    )


def verify_token(
    token: str,
    key_source: KeySource,
    *,
    expected_issuer: str | list[str] | None = None,
    expected_audience: str | list[str] | None = None,
    expected_key_id: str | None = None,
    leeway: int = 0,
    cache: JWKSCache | None = None,
    settings: Settings | None = None,
) -> VerificationResult:
    decoded = decode_token(token)
    if decoded.error is not None:
        return VerificationResult(
            is_valid=False,
            header=decoded.header,
            payload=decoded.payload,
            error=decoded.error,
            error_type=FormatError.__name__,
        )
    header = decoded.header or {}
    payload = decoded.payload
    details: dict[str, bool] = {}

    if expected_key_id:
        kid = header.get("kid")
        details[CHECK_KEY_ID] = kid == expected_key_id
        if not details[CHECK_KEY_ID]:
            mismatch = ClaimError(
                f"Key ID mismatch: expected {expected_key_id!r}, token has {kid!r}",
                check=CHECK_KEY_ID,
            )
            return _failed(header, payload, mismatch, details)

    logger.debug(
        "resolving %s key for alg=%s kid=%s",
        key_source.kind,
        header.get("alg"),
        header.get("kid"),
    )
    try:
        key = resolve_key(key_source, header, cache=cache, settings=settings)
    except (KeyFetchError, KeyNotFoundError, KeyImportError) as exc:
        return _failed(header, payload, exc, details)

    issuer = expected_issuer or None
    audience = expected_audience or None
    options: dict[str, Any] = {
        "verify_aud": audience is not None,
        "verify_iss": issuer is not None,
        "verify_sub": False,
        "verify_jti": False,
    }
    try:
        verified = jwt.decode(
            token.strip(),
            key=key,
            algorithms=[str(header["alg"])],
            audience=audience,
            issuer=issuer,
            leeway=leeway,
            options=options,
        )
    except jwt_exceptions.PyJWTError as exc:
        problem = _classify_jwt_error(exc)
        if isinstance(problem, ClaimError):
            # PyJWT checks claims only after the signature has verified.
            details[CHECK_SIGNATURE] = True
            details[problem.check] = False
        else:
            details[CHECK_SIGNATURE] = False
        return _failed(header, payload, problem, details)

    details[CHECK_SIGNATURE] = True
    details[CHECK_EXPIRY] = True
    if issuer is not None:
        details[CHECK_ISSUER] = True
    if audience is not None:
        details[CHECK_AUDIENCE] = True
    return VerificationResult(
        is_valid=True,
        header=header,
        payload=verified,
        validation_details=details,
    )


def suggest_expectations(token: str) -> dict[str, str | None]:
    decoded = decode_token(token)
    header = decoded.header or {}
    payload = decoded.payload or {}

    kid = header.get("kid")
    iss = payload.get("iss")
    aud = payload.get("aud")
    if isinstance(aud, list):
        aud = aud[0] if aud else None
    return {
        "expectedKeyId": kid if isinstance(kid, str) else None,
        "expectedIssuer": iss if isinstance(iss, str) else None,
        "expectedAudience": aud if isinstance(aud, str) else None,
        "keySetUrl": guess_jwks_url(iss),
    }
