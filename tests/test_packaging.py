"""Check that pyproject.toml matches what the workgraph package imports."""

from __future__ import annotations

import ast
import re
import sys
from pathlib import Path
from typing import Any

PROJECT_ROOT = Path(__file__).resolve().parents[1]
PACKAGE_DIR = PROJECT_ROOT / "src" / "workgraph"

# import name -> distribution name on the index
DISTRIBUTIONS = {"yaml": "pyyaml"}


def _load_pyproject() -> dict[str, Any]:
    raw = (PROJECT_ROOT / "pyproject.toml").read_text(encoding="utf-8")
    if sys.version_info >= (3, 11):
        import tomllib

        return tomllib.loads(raw)

    import tomli

    return tomli.loads(raw)


def _requirement_names(requirements: list[str]) -> set[str]:
    return {re.split(r"[<>=!~;\[ ]", item, maxsplit=1)[0].strip().lower() for item in requirements}


def _third_party_imports() -> set[str]:
    stdlib = set(sys.stdlib_module_names)
    found: set[str] = set()
    for path in PACKAGE_DIR.rglob("*.py"):
        tree = ast.parse(path.read_text(encoding="utf-8"))
        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                roots = [alias.name.split(".")[0] for alias in node.names]
            elif isinstance(node, ast.ImportFrom) and node.level == 0 and node.module:
                roots = [node.module.split(".")[0]]
            else:
                continue
            found.update(r for r in roots if r not in stdlib and r not in {"__future__", "workgraph"})
    return found


def test_every_imported_library_is_a_runtime_dependency() -> None:
    declared = _requirement_names(_load_pyproject()["project"]["dependencies"])
    imported = {DISTRIBUTIONS.get(name, name) for name in _third_party_imports()}
    assert imported
    assert imported <= declared, sorted(imported - declared)


def test_test_extra_carries_pytest() -> None:
    extras = _load_pyproject()["project"]["optional-dependencies"]
    assert "pytest" in _requirement_names(extras["test"])


def test_every_package_directory_is_discoverable() -> None:
    assert _load_pyproject()["tool"]["setuptools"]["packages"]["find"]["where"] == ["src"]
    for directory in [PACKAGE_DIR, *(p for p in PACKAGE_DIR.rglob("*") if p.is_dir() and p.name != "__pycache__")]:
        if any(directory.glob("*.py")):
            assert (directory / "__init__.py").exists(), directory
