from __future__ import annotations

import json
import socket
import threading
import time
from typing import Any

import pytest
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa

from conftest import StubServer
from token_inspector.codec import b64url_encode_bytes
from token_inspector.config import Settings
from token_inspector.errors import KeyFetchError, KeyImportError, KeyNotFoundError
from token_inspector.keys import (
    JWKSCache,
    discover_jwks_uri,
    expected_kty_for_alg,
    fetch_jwks,
    guess_jwks_url,
    import_key,
    jwk_from_pem,
    jwk_thumbprint_sha256,
    jwks_from_pem,
    load_key_set,
    resolve_key,
    select_jwk,
)
from token_inspector.models import KeySource


def _closed_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])


def test_key_source_requires_exactly_one_input() -> None:
    with pytest.raises(ValueError):
        KeySource()
    with pytest.raises(ValueError):
        KeySource(key="secret", key_set_url="https://issuer.example/jwks")
    with pytest.raises(ValueError):
        KeySource.from_url("   ")
    assert KeySource.from_key("secret").kind == "key"
    assert KeySource.from_key_set({"keys": []}).kind == "key_set"
    assert KeySource.from_url("https://issuer.example/jwks").kind == "key_set_url"


@pytest.mark.parametrize(
    ("alg", "kty"),
    [("HS256", "oct"), ("RS384", "RSA"), ("PS512", "RSA"), ("ES256", "EC"), ("EdDSA", "OKP")],
)
def test_expected_kty_for_alg(alg: str, kty: str) -> None:
    assert expected_kty_for_alg(alg) == kty


@pytest.mark.parametrize("alg", ["none", "XYZ", ""])
def test_unknown_or_none_algorithm_is_refused(alg: str) -> None:
    with pytest.raises(KeyImportError):
        import_key("secret", alg)


def test_hmac_secret_is_used_as_utf8_bytes() -> None:
    assert import_key("topsecret", "HS256") == b"topsecret"


def test_hmac_refuses_pem_and_empty_secret(rsa_pems: tuple[str, str]) -> None:
    _private_pem, public_pem = rsa_pems
    with pytest.raises(KeyImportError, match="PEM"):
        import_key(public_pem, "HS256")
    with pytest.raises(KeyImportError):
        import_key("", "HS256")


def test_oct_jwk_for_hmac() -> None:
    jwk = {"kty": "oct", "k": b64url_encode_bytes(b"topsecret")}
    assert import_key(jwk, "HS256") == b"topsecret"
    with pytest.raises(KeyImportError, match="does not match"):
        import_key(jwk, "RS256")


def test_asymmetric_algorithm_refuses_shared_secret() -> None:
    with pytest.raises(KeyImportError):
        import_key("topsecret", "RS256")


def test_jwk_family_and_alg_must_match_requested_algorithm(rsa_pems: tuple[str, str]) -> None:
    jwk = jwk_from_pem(rsa_pems[1])
    assert isinstance(import_key(jwk, "RS256"), rsa.RSAPublicKey)
    with pytest.raises(KeyImportError, match="does not match"):
        import_key(jwk, "ES256")
    with pytest.raises(KeyImportError, match="RS384"):
        import_key({**jwk, "alg": "RS384"}, "RS256")


def test_pem_family_must_match_requested_algorithm(ec_pems: tuple[str, str]) -> None:
    with pytest.raises(KeyImportError):
        import_key(ec_pems[1], "RS256")
    assert isinstance(import_key(ec_pems[1], "ES256"), ec.EllipticCurvePublicKey)


def test_private_pem_is_reduced_to_public_for_verification(rsa_pems: tuple[str, str]) -> None:
    key = import_key(rsa_pems[0], "RS256")
    assert isinstance(key, rsa.RSAPublicKey)


def test_signing_requires_private_key(rsa_pems: tuple[str, str]) -> None:
    private_pem, public_pem = rsa_pems
    assert isinstance(import_key(private_pem, "PS256", private=True), rsa.RSAPrivateKey)
    with pytest.raises(KeyImportError):
        import_key(public_pem, "RS256", private=True)
    with pytest.raises(KeyImportError):
        import_key(jwk_from_pem(public_pem), "RS256", private=True)


def test_certificate_pem_yields_its_public_key(certificate_pem: str) -> None:
    assert isinstance(import_key(certificate_pem, "RS256"), rsa.RSAPublicKey)


def test_jwk_json_text_is_accepted(ed25519_pems: tuple[str, str]) -> None:
    text = json.dumps(jwk_from_pem(ed25519_pems[1]))
    assert isinstance(import_key(text, "EdDSA"), ed25519.Ed25519PublicKey)
    with pytest.raises(KeyImportError):
        import_key("{not json", "EdDSA")
    with pytest.raises(KeyImportError, match="key set"):
        import_key('{"keys": []}', "EdDSA")


def test_select_jwk_matches_kid_only() -> None:
    key_set = {"keys": [{"kty": "oct", "kid": "a"}, {"kty": "oct", "kid": "b"}]}
    assert select_jwk(key_set, "b")["kid"] == "b"
    with pytest.raises(KeyNotFoundError):
        select_jwk(key_set, "c")
    with pytest.raises(KeyNotFoundError, match="no kid"):
        select_jwk(key_set, None)


def test_select_jwk_has_no_single_key_fallback() -> None:
    with pytest.raises(KeyNotFoundError):
        select_jwk({"keys": [{"kty": "oct", "k": "c2VjcmV0"}]}, None)
    with pytest.raises(KeyNotFoundError):
        select_jwk({"foo": 1}, "a")


def test_fetch_jwks_success(stub_server: StubServer) -> None:
    url = stub_server.serve_json("/jwks", {"keys": [{"kty": "oct", "kid": "a"}]})
    assert fetch_jwks(url) == {"keys": [{"kty": "oct", "kid": "a"}]}


def test_fetch_jwks_http_error_status(stub_server: StubServer) -> None:
    url = stub_server.serve_raw("/jwks", b"boom", status=500)
    with pytest.raises(KeyFetchError, match="HTTP 500"):
        fetch_jwks(url)


def test_fetch_jwks_invalid_json(stub_server: StubServer) -> None:
    url = stub_server.serve_raw("/jwks", b"<html>nope</html>")
    with pytest.raises(KeyFetchError, match="valid JSON"):
        fetch_jwks(url)


def test_fetch_jwks_without_keys_is_empty_set(stub_server: StubServer) -> None:
    url = stub_server.serve_json("/jwks", {"foo": "bar"})
    assert fetch_jwks(url) == {"keys": []}


def test_fetch_jwks_size_limit(stub_server: StubServer) -> None:
    url = stub_server.serve_json("/jwks", {"keys": [{"kty": "oct", "kid": "x" * 100}]})
    with pytest.raises(KeyFetchError, match="too large"):
        fetch_jwks(url, max_bytes=32)


def test_fetch_jwks_connection_refused() -> None:
    with pytest.raises(KeyFetchError):
        fetch_jwks(f"http://127.0.0.1:{_closed_port()}/jwks", timeout=2)


@pytest.mark.parametrize("url", ["file:///etc/passwd", "ftp://example.com/jwks", "jwks.json"])
def test_fetch_jwks_rejects_non_http_urls(url: str) -> None:
    with pytest.raises(KeyFetchError, match="http"):
        fetch_jwks(url)


def test_cache_fetches_each_url_once(stub_server: StubServer) -> None:
    url = stub_server.serve_json("/jwks", {"keys": [{"kty": "oct", "kid": "a"}]})
    cache = JWKSCache()
    first = cache.get(url)
    first["keys"].clear()
    second = cache.get(url)
    assert second == {"keys": [{"kty": "oct", "kid": "a"}]}
    assert stub_server.hits["/jwks"] == 1
    assert url in cache
    assert len(cache) == 1


def test_cache_does_not_store_failures() -> None:
    calls: list[str] = []

    def flaky(url: str, **_kwargs: Any) -> dict[str, Any]:
        calls.append(url)
        if len(calls) == 1:
            raise KeyFetchError("failed to fetch JWKS: HTTP 503 Service Unavailable")
        return {"keys": []}

    cache = JWKSCache(fetcher=flaky)
    with pytest.raises(KeyFetchError):
        cache.get("https://issuer.example/jwks")
    assert "https://issuer.example/jwks" not in cache
    assert cache.get("https://issuer.example/jwks") == {"keys": []}
    assert len(calls) == 2


def test_cache_fetches_once_under_concurrency() -> None:
    calls: list[str] = []

    def slow(url: str, **_kwargs: Any) -> dict[str, Any]:
        calls.append(url)
        time.sleep(0.05)
        return {"keys": [{"kty": "oct", "kid": "a"}]}

    cache = JWKSCache(fetcher=slow)
    results: list[dict[str, Any]] = []
    threads = [
        threading.Thread(target=lambda: results.append(cache.get("https://issuer.example/jwks")))
        for _ in range(8)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)
    assert len(calls) == 1
    assert len(results) == 8


def test_load_key_set_uses_settings(stub_server: StubServer) -> None:
    url = stub_server.serve_json("/jwks", {"keys": [{"kty": "oct", "kid": "x" * 100}]})
    with pytest.raises(KeyFetchError, match="too large"):
        load_key_set(url, settings=Settings(jwks_max_bytes=16))
    assert load_key_set(url, settings=Settings(fetch_timeout=5.0))["keys"][0]["kty"] == "oct"


def test_resolve_key_precedence_and_remote_lookup(
    stub_server: StubServer, rsa_pems: tuple[str, str]
) -> None:
    jwk = jwk_from_pem(rsa_pems[1], kid="k1")
    url = stub_server.serve_json("/jwks", {"keys": [jwk]})
    header = {"alg": "RS256", "kid": "k1"}

    cache = JWKSCache()
    key = resolve_key(KeySource.from_url(url), header, cache=cache)
    assert isinstance(key, rsa.RSAPublicKey)
    resolve_key(KeySource.from_url(url), header, cache=cache)
    assert stub_server.hits["/jwks"] == 1

    inline = resolve_key(KeySource.from_key_set({"keys": [jwk]}), header)
    assert isinstance(inline, rsa.RSAPublicKey)

    with pytest.raises(KeyImportError, match="no alg"):
        resolve_key(KeySource.from_key(jwk), {"kid": "k1"})


def test_rfc7638_thumbprint_vector() -> None:
    jwk = {
        "kty": "RSA",
        "n": (
            "0vx7agoebGcQSuuPiLJXZptN9nndrQmbXEps2aiAFbWhM78LhWx4cbbfAAtVT86z"
            "wu1RK7aPFFxuhDR1L6tSoc_BJECPebWKRXjBZCiFV4n3oknjhMstn64tZ_2W-5JsG"
            "Y4Hc5n9yBXArwl93lqt7_RN5w6Cf0h4QyQ5v-65YGjQR0_FDW2QvzqY368QQMicAt"
            "aSqzs8KJZgnYb9c7d0zgdAZHzu6qMQvRL5hajrn1n91CbOpbISD08qNLyrdkt-bFT"
            "WhAI4vMQFh6WeZu0fM4lFd2NcRwr3XPksINHaQ-G_xBniIqbw0Ls1jF44-csFCur-"
            "kEgU8awapJzKnqDKgw"
        ),
        "e": "AQAB",
        "alg": "RS256",
        "kid": "2011-04-29",
    }
    assert jwk_thumbprint_sha256(jwk) == "NzbLsXh8uDCcd-6MNwXF4W_7noWXFZAfHkxZsRGC9Xs"


def test_thumbprint_requires_members() -> None:
    with pytest.raises(ValueError, match="missing"):
        jwk_thumbprint_sha256({"kty": "EC", "crv": "P-256", "x": "abc"})
    with pytest.raises(ValueError, match="unsupported"):
        jwk_thumbprint_sha256({"kty": "XYZ"})


def test_jwk_from_pem_for_each_family(
    rsa_pems: tuple[str, str],
    ec_pems: tuple[str, str],
    ed25519_pems: tuple[str, str],
    certificate_pem: str,
    certificate: x509.Certificate,
) -> None:
    assert jwk_from_pem(rsa_pems[1], kid="r")["kty"] == "RSA"
    assert jwk_from_pem(rsa_pems[1], kid="r")["kid"] == "r"
    ec_jwk = jwk_from_pem(ec_pems[1])
    assert ec_jwk["kty"] == "EC"
    assert ec_jwk["crv"] == "P-256"
    okp_jwk = jwk_from_pem(ed25519_pems[1])
    assert okp_jwk["kty"] == "OKP"
    assert okp_jwk["crv"] == "Ed25519"

    from_private = jwk_from_pem(rsa_pems[0])
    assert "d" not in from_private
    assert from_private["n"] == jwk_from_pem(rsa_pems[1])["n"]

    from_cert = jwk_from_pem(certificate_pem)
    cert_key = certificate.public_key()
    assert isinstance(cert_key, rsa.RSAPublicKey)
    assert from_cert["kty"] == "RSA"
    assert from_cert["e"] == "AQAB"

    assert jwks_from_pem(rsa_pems[1], kid="r") == {"keys": [jwk_from_pem(rsa_pems[1], kid="r")]}
    with pytest.raises(KeyImportError):
        jwk_from_pem("-----BEGIN PUBLIC KEY-----\nnope\n-----END PUBLIC KEY-----")


@pytest.mark.parametrize(
    ("issuer", "expected"),
    [
        ("https://login.example.com/tenant/v2", "https://login.example.com/.well-known/jwks.json"),
        ("http://localhost:8080", "http://localhost:8080/.well-known/jwks.json"),
        ("not a url", None),
        ("", None),
        (None, None),
        (42, None),
    ],
)
def test_guess_jwks_url(issuer: object, expected: str | None) -> None:
    assert guess_jwks_url(issuer) == expected


def test_discover_jwks_uri(stub_server: StubServer) -> None:
    jwks_url = stub_server.url("/keys")
    stub_server.serve_json("/issuer/.well-known/openid-configuration", {"jwks_uri": jwks_url})
    assert discover_jwks_uri(stub_server.url("/issuer/")) == jwks_url


def test_discover_jwks_uri_requires_http_jwks_uri(stub_server: StubServer) -> None:
    stub_server.serve_json("/issuer/.well-known/openid-configuration", {"issuer": "x"})
    with pytest.raises(KeyFetchError, match="jwks_uri"):
        discover_jwks_uri(stub_server.url("/issuer"))
