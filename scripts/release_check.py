from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

REQUIRED_SCHEMA_DEFS = (
    "DecodeResult",
    "SignResult",
    "VerificationResult",
    "CertificateDecodeResult",
)


def _load_pyproject(pyproject_path: Path) -> dict[str, Any]:
    try:
        import tomllib  # py311+
    except ModuleNotFoundError:  # pragma: no cover
        raise SystemExit("python>=3.11 required (tomllib missing)")

    data = tomllib.loads(pyproject_path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):  # pragma: no cover
        raise SystemExit("pyproject.toml did not parse to a table")
    return data


def _project_version(data: dict[str, Any]) -> str:
    version = data.get("project", {}).get("version")
    if not isinstance(version, str) or not version.strip():
        raise SystemExit("pyproject.toml missing [project].version")
    return version.strip()


def _require_pinned(spec: str, *, context: str) -> None:
    if "==" not in spec:
        raise SystemExit(f"unpinned dependency in {context}: {spec!r} (expected '==')")


def _check_pins(data: dict[str, Any], req_dev: Path) -> None:
    project = data.get("project", {})
    deps = project.get("dependencies", [])
    if deps and not isinstance(deps, list):
        raise SystemExit("pyproject.toml [project].dependencies must be a list")
    for dep in deps:
        if isinstance(dep, str) and dep.strip():
            _require_pinned(dep.strip(), context="pyproject.toml")

    for extra, specs in project.get("optional-dependencies", {}).items():
        for spec in specs:
            _require_pinned(spec.strip(), context=f"pyproject.toml [{extra}] extra")

    for raw in req_dev.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith(("-r", "--requirement")):
            continue
        _require_pinned(line, context="requirements-dev.txt")


def _check_schema(schema_path: Path) -> None:
    try:
        schema = json.loads(schema_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise SystemExit(f"cannot read {schema_path.name}: {exc}") from exc
    defs = schema.get("$defs") if isinstance(schema, dict) else None
    if not isinstance(defs, dict):
        raise SystemExit(f"{schema_path.name} missing $defs")
    missing = [name for name in REQUIRED_SCHEMA_DEFS if name not in defs]
    if missing:
        raise SystemExit(f"{schema_path.name} missing definitions: {', '.join(missing)}")


def main() -> int:
    root = Path(__file__).resolve().parents[1]
    pyproject = root / "pyproject.toml"
    data = _load_pyproject(pyproject)
    version = _project_version(data)

    # Changelog must have a versioned section for the current package version.
    changelog_text = (root / "CHANGELOG.md").read_text(encoding="utf-8")
    if not re.search(rf"^##\s+v{re.escape(version)}\b", changelog_text, flags=re.MULTILINE):
        raise SystemExit(f"CHANGELOG.md missing section header for v{version}")

    # `token-inspector --version` must match the pyproject version.
    from token_inspector.version import __version__  # imported late to keep script fast

    if __version__ != version:
        raise SystemExit(f"version mismatch: pyproject={version} package={__version__}")

    _check_pins(data, root / "requirements-dev.txt")
    _check_schema(root / "schemas" / "results.schema.json")
    print(f"ok: token-inspector v{version}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
