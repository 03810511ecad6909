from __future__ import annotations

import json
import subprocess
import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from token_inspector.samples import generate_sample


def _verify(token: str, jwks_url: str, kid: str) -> tuple[int, dict[str, Any]]:
    proc = subprocess.run(
        [
            sys.executable,
            "-m",
            "token_inspector",
            "verify",
            "--token",
            token,
            "--jwks-url",
            jwks_url,
            "--kid",
            kid,
            "--timeout",
            "3",
        ],
        check=False,
        capture_output=True,
        text=True,
    )
    if proc.returncode == 2:
        raise RuntimeError(f"verify crashed: {proc.stderr.strip()}")
    return proc.returncode, json.loads(proc.stdout)


def main() -> int:
    sample = generate_sample("rs256-jwks")
    token = sample["token"]
    kid = sample["header"]["kid"]
    jwks = sample["verify"]["key_set"]

    class IssuerHandler(BaseHTTPRequestHandler):
        def log_message(self, fmt: str, *args: Any) -> None:
            return

        def do_GET(self) -> None:  # noqa: N802
            if self.path == "/jwks":
                body = json.dumps(jwks).encode("utf-8")
                self.send_response(200)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)
                return
            self.send_response(500)
            self.end_headers()

    issuer = ThreadingHTTPServer(("127.0.0.1", 0), IssuerHandler)
    issuer_thread = threading.Thread(target=issuer.serve_forever, daemon=True)
    issuer_thread.start()
    issuer_host, issuer_port = issuer.server_address[:2]
    base = f"http://{issuer_host!s}:{issuer_port}"

    try:
        code, body = _verify(token, base + "/jwks", kid)
        if code != 0 or body.get("isValid") is not True:
            raise RuntimeError(f"expected verify success, got {code}: {body}")

        code, body = _verify(token, base + "/broken", kid)
        if code != 1 or body.get("errorType") != "KeyFetchError":
            raise RuntimeError(f"expected KeyFetchError, got {code}: {body}")
    finally:
        issuer.shutdown()
        issuer.server_close()
        issuer_thread.join(timeout=5)

    print("ok")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
