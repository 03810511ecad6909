from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Any

from jwt import exceptions as jwt_exceptions

from .certs import decode_certificate, decode_certificate_strict
from .codec import decode_base64, decode_base64_url, encode_base64, encode_base64_url
from .config import Settings, load_settings
from .core import decode_token, sign_token, suggest_expectations, verify_token
from .keys import SUPPORTED_ALGORITHMS, jwk_from_pem, jwks_from_pem
from .models import KeySource
from .samples import SUPPORTED_SAMPLE_KINDS, generate_sample
from .version import __version__

logger = logging.getLogger(__name__)


def _print_json(obj: object) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


def _read_stdin(label: str) -> str:
    text = sys.stdin.read()
    if not text.strip():
        raise ValueError(f"stdin is empty; expected {label}")
    return text


def _load_text(text_arg: str, label: str) -> str:
    if text_arg != "-":
        return text_arg
    return _read_stdin(label)


def _load_token(token_arg: str) -> str:
    return _load_text(token_arg, "token").strip()


def _load_json_object(text: str, context: str) -> dict[str, Any]:
    try:
        obj = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{context} must be valid JSON: {exc}") from exc
    if not isinstance(obj, dict):
        raise ValueError(f"{context} must be a JSON object")
    return obj


def _key_material(text: str) -> dict[str, Any] | str:
    if text.strip().startswith("{"):
        return _load_json_object(text, "key")
    return text


def _key_source_from_args(args: argparse.Namespace) -> KeySource:
    chosen = [
        name
        for name in ("key", "key_text", "jwk", "jwks", "jwks_url")
        if getattr(args, name) is not None
    ]
    if not chosen:
        raise ValueError(
            "missing key material; provide --key, --key-text, --jwk, --jwks, or --jwks-url"
        )
    if len(chosen) > 1:
        flags = ", ".join("--" + name.replace("_", "-") for name in chosen)
        raise ValueError(f"provide exactly one key source (got {flags})")

    if args.jwks_url is not None:
        return KeySource.from_url(args.jwks_url)
    if args.jwks is not None:
        return KeySource.from_key_set(
            _load_json_object(Path(args.jwks).read_text(encoding="utf-8"), "JWKS")
        )
    if args.jwk is not None:
        return KeySource.from_key(
            _load_json_object(Path(args.jwk).read_text(encoding="utf-8"), "JWK")
        )

    if args.key is not None:
        text = Path(args.key).read_text(encoding="utf-8").strip()
    else:
        text = _load_text(args.key_text, "key material")
    material = _key_material(text)
    if isinstance(material, dict) and "keys" in material:
        return KeySource.from_key_set(material)
    return KeySource.from_key(material)


def _settings_from_args(args: argparse.Namespace) -> Settings:
    settings = load_settings()
    if args.timeout is not None:
        if args.timeout <= 0:
            raise ValueError("--timeout must be positive")
        settings = dataclasses.replace(settings, fetch_timeout=args.timeout)
    return settings


def _parse_audience(values: list[str] | None) -> str | list[str] | None:
    if not values:
        return None
    items: list[str] = []
    for raw in values:
        items.extend(part.strip() for part in raw.split(",") if part.strip())
    if not items:
        return None
    if len(items) == 1:
        return items[0]
    return list(dict.fromkeys(items))


def _cmd_decode(args: argparse.Namespace) -> int:
    token = _load_token(args.token)
    result = decode_token(token)
    output = result.to_dict()
    if args.suggest:
        output["suggested"] = suggest_expectations(token)
    _print_json(output)
    return 0 if result.ok else 1


def _cmd_verify(args: argparse.Namespace) -> int:
    if args.token == "-" and args.key_text == "-":
        raise ValueError("cannot read both token and key from stdin; provide one normally")
    if args.leeway < 0:
        raise ValueError("--leeway must be a non-negative integer")
    source = _key_source_from_args(args)
    token = _load_token(args.token)
    result = verify_token(
        token,
        source,
        expected_issuer=args.iss,
        expected_audience=_parse_audience(args.aud),
        expected_key_id=args.kid,
        leeway=args.leeway,
        settings=_settings_from_args(args),
    )
    _print_json(result.to_dict())
    if not result.is_valid:
        logger.info("token is not valid: %s", result.error)
        return 1
    return 0


def _cmd_sign(args: argparse.Namespace) -> int:
    if args.payload and args.payload_file:
        raise ValueError("use only one of --payload or --payload-file")
    if args.payload_file:
        payload = _load_json_object(Path(args.payload_file).read_text(encoding="utf-8"), "payload")
    elif args.payload:
        payload = _load_json_object(args.payload, "payload")
    else:
        raise ValueError("missing payload: use --payload or --payload-file")

    if args.key and args.key_text is not None:
        raise ValueError("use only one of --key or --key-text")
    if args.key:
        key_text = Path(args.key).read_text(encoding="utf-8").strip()
    elif args.key_text is not None:
        key_text = _load_text(args.key_text, "key material")
    else:
        raise ValueError("missing key material; provide --key or --key-text")

    headers = _load_json_object(args.headers, "headers") if args.headers else None
    result = sign_token(
        payload,
        _key_material(key_text),
        algorithm=args.alg,
        expires_in=args.expires_in,
        kid=args.kid,
        headers=headers,
    )
    if result.error is not None:
        raise ValueError(result.error)
    print(result.token)
    return 0


def _cmd_b64(args: argparse.Namespace) -> int:
    text = _load_text(args.text, "text")
    if args.action == "encode":
        print(encode_base64_url(text) if args.url else encode_base64(text))
    else:
        print(decode_base64_url(text.strip()) if args.url else decode_base64(text))
    return 0


def _cmd_cert(args: argparse.Namespace) -> int:
    if args.cert == "-":
        text = _read_stdin("certificate")
    else:
        text = Path(args.cert).read_text(encoding="utf-8")
    result = decode_certificate_strict(text) if args.strict else decode_certificate(text)
    _print_json(result.to_dict())
    return 0 if result.error is None else 1


def _cmd_jwk(args: argparse.Namespace) -> int:
    _print_json(jwk_from_pem(Path(args.pem).read_text(encoding="utf-8"), kid=args.kid))
    return 0


def _cmd_jwks(args: argparse.Namespace) -> int:
    _print_json(jwks_from_pem(Path(args.pem).read_text(encoding="utf-8"), kid=args.kid))
    return 0


def _cmd_sample(args: argparse.Namespace) -> int:
    _print_json(generate_sample(args.kind, exp_seconds=args.exp_seconds))
    return 0


def _configure_logging(verbose: bool) -> None:
    try:
        level = load_settings().log_level_number
    except ValueError as exc:
        print(f"warning: {exc}", file=sys.stderr)
        level = logging.WARNING
    logging.basicConfig(
        level=logging.DEBUG if verbose else level,
        format="[%(levelname)-5s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="token-inspector")
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging on stderr"
    )

    sub = parser.add_subparsers(dest="cmd", required=True)

    p_decode = sub.add_parser("decode", help="Decode a token without verifying its signature")
    p_decode.add_argument("--token", required=True, help="Token string (use '-' to read stdin)")
    p_decode.add_argument(
        "--suggest",
        action="store_true",
        help="Also print suggested kid/iss/aud expectations and a guessed JWKS URL",
    )
    p_decode.set_defaults(func=_cmd_decode)

    p_verify = sub.add_parser("verify", help="Verify a token signature and claims")
    p_verify.add_argument("--token", required=True, help="Token string (use '-' to read stdin)")
    p_verify.add_argument("--key", help="Path to a secret, PEM key/certificate, JWK or JWKS file")
    p_verify.add_argument("--key-text", help="Raw secret, PEM or JWK text ('-' reads stdin)")
    p_verify.add_argument("--jwk", help="Path to a JWK JSON file")
    p_verify.add_argument("--jwks", help="Path to a JWKS JSON file")
    p_verify.add_argument("--jwks-url", help="JWKS URL (http or https)")
    p_verify.add_argument("--kid", help="Expected key id; must match the token header")
    p_verify.add_argument("--iss", help="Expected issuer")
    p_verify.add_argument(
        "--aud",
        action="append",
        help="Expected audience (repeatable or comma-separated)",
    )
    p_verify.add_argument(
        "--leeway",
        type=int,
        default=0,
        help="Clock skew in seconds for exp/nbf (default: 0)",
    )
    p_verify.add_argument(
        "--timeout",
        type=float,
        help="JWKS fetch timeout in seconds (default: none)",
    )
    p_verify.set_defaults(func=_cmd_verify)

    p_sign = sub.add_parser("sign", help="Sign a payload into a token")
    p_sign.add_argument("--payload", help="JSON payload string")
    p_sign.add_argument("--payload-file", help="Path to JSON payload file")
    p_sign.add_argument("--headers", help="Extra JSON header fields (alg/kid are ignored)")
    p_sign.add_argument(
        "--alg",
        default="RS256",
        choices=SUPPORTED_ALGORITHMS,
        help="Algorithm (default: RS256)",
    )
    p_sign.add_argument("--key", help="Path to a secret, PEM private key or private JWK")
    p_sign.add_argument("--key-text", help="Raw secret, PEM or JWK text ('-' reads stdin)")
    p_sign.add_argument("--kid", help="Key id header (defaults to the JWK kid)")
    p_sign.add_argument(
        "--expires-in",
        default="3600",
        help="Seconds until exp; non-numeric values fall back to 3600 (default: 3600)",
    )
    p_sign.set_defaults(func=_cmd_sign)

    p_b64 = sub.add_parser("b64", help="Base64 / Base64-URL encode or decode text")
    p_b64.add_argument("action", choices=["encode", "decode"])
    p_b64.add_argument("--text", required=True, help="Input text (use '-' to read stdin)")
    p_b64.add_argument("--url", action="store_true", help="Use the URL-safe unpadded alphabet")
    p_b64.set_defaults(func=_cmd_b64)

    p_cert = sub.add_parser("cert", help="Decode a PEM or Base64 DER certificate")
    p_cert.add_argument("--cert", required=True, help="Path to certificate (use '-' for stdin)")
    p_cert.add_argument(
        "--strict",
        action="store_true",
        help="Parse with a full X.509 decoder instead of the best-effort extractor",
    )
    p_cert.set_defaults(func=_cmd_cert)

    p_jwk = sub.add_parser("jwk", help="Convert a PEM key or certificate to a public JWK")
    p_jwk.add_argument("--pem", required=True, help="Path to PEM file")
    p_jwk.add_argument("--kid", help="Optional key id")
    p_jwk.set_defaults(func=_cmd_jwk)

    p_jwks = sub.add_parser("jwks", help="Convert a PEM key or certificate to a JWKS")
    p_jwks.add_argument("--pem", required=True, help="Path to PEM file")
    p_jwks.add_argument("--kid", help="Optional key id")
    p_jwks.set_defaults(func=_cmd_jwks)

    p_sample = sub.add_parser("sample", help="Generate an offline demo token and keys")
    p_sample.add_argument(
        "--kind",
        choices=sorted(SUPPORTED_SAMPLE_KINDS),
        default="hs256",
        help="Sample kind (default: hs256)",
    )
    p_sample.add_argument(
        "--exp-seconds",
        type=int,
        default=3600,
        help="Expiration seconds from now (default: 3600)",
    )
    p_sample.set_defaults(func=_cmd_sample)

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)
    try:
        return int(args.func(args))
    except KeyboardInterrupt:
        return 130
    except (OSError, ValueError, jwt_exceptions.PyJWTError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
