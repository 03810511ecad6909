from __future__ import annotations

import time
from typing import Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa
from jwt import algorithms

from .core import decode_token, sign_token
from .keys import jwk_from_pem

SUPPORTED_SAMPLE_KINDS = frozenset({"hs256", "rs256-jwk", "rs256-jwks", "es256-jwks", "eddsa-pem"})
SAMPLE_SECRET = "demo-secret-please-change"
SAMPLE_ISSUER = "https://issuer.example"
SAMPLE_AUDIENCE = "demo-aud"


def _private_pem(private_key: Any) -> str:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def _public_pem(private_key: Any) -> str:
    return (
        private_key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode("utf-8")
    )


def _sample_payload() -> dict[str, Any]:
    return {
        "sub": "demo-user",
        "aud": SAMPLE_AUDIENCE,
        "iss": SAMPLE_ISSUER,
        "iat": int(time.time()),
    }


def _decoy_jwk(kid: str) -> dict[str, Any]:
    other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return jwk_from_pem(_public_pem(other), kid=kid)


def generate_sample(kind: str, exp_seconds: int = 3600) -> dict[str, Any]:
    """Demo token plus the key material that signs and verifies it.

    ``verify`` holds exactly one of ``key`` or ``key_set``, mirroring
    ``KeySource``. Nothing touches the network.
    """
    if kind not in SUPPORTED_SAMPLE_KINDS:
        raise ValueError(f"unknown sample kind: {kind}")

    sign_key: dict[str, Any] | str
    verify: dict[str, Any]
    if kind == "hs256":
        alg = "HS256"
        sign_key = SAMPLE_SECRET
        verify = {"key": SAMPLE_SECRET}
    elif kind in {"rs256-jwk", "rs256-jwks"}:
        alg = "RS256"
        private_key: Any = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        sign_key = algorithms.RSAAlgorithm.to_jwk(private_key, as_dict=True)
        sign_key["kid"] = "demo-k1"
        public_jwk = jwk_from_pem(_public_pem(private_key), kid="demo-k1")
        if kind == "rs256-jwk":
            verify = {"key": public_jwk}
        else:
            verify = {"key_set": {"keys": [public_jwk, _decoy_jwk("demo-k2")]}}
    elif kind == "es256-jwks":
        alg = "ES256"
        private_key = ec.generate_private_key(ec.SECP256R1())
        sign_key = algorithms.ECAlgorithm.to_jwk(private_key, as_dict=True)
        sign_key["kid"] = "demo-ec1"
        public_jwk = jwk_from_pem(_public_pem(private_key), kid="demo-ec1")
        verify = {"key_set": {"keys": [_decoy_jwk("demo-k2"), public_jwk]}}
    else:
        alg = "EdDSA"
        private_key = ed25519.Ed25519PrivateKey.generate()
        sign_key = _private_pem(private_key)
        verify = {"key": _public_pem(private_key)}

    signed = sign_token(
        _sample_payload(),
        sign_key,
        algorithm=alg,
        expires_in=exp_seconds,
        kid="demo-ed1" if alg == "EdDSA" else None,
    )
    if signed.error is not None:
        raise ValueError(f"could not build {kind} sample: {signed.error}")
    decoded = decode_token(signed.token)
    return {
        "kind": kind,
        "alg": alg,
        "token": signed.token,
        "header": decoded.header,
        "payload": decoded.payload,
        "sign_key": sign_key,
        "verify": verify,
        "expected": {"issuer": SAMPLE_ISSUER, "audience": SAMPLE_AUDIENCE},
    }
