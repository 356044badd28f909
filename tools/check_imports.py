"""Validate Python layer import boundaries for story_relay."""

from __future__ import annotations

import ast
from pathlib import Path

PACKAGE = "story_relay"
PROJECT_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_SOURCE_ROOT = PROJECT_ROOT / "src" / PACKAGE
KNOWN_LAYERS = {
    "api",
    "core",
    "adapters",
    "cli",
    "application",
    "domain",
}
# Lock and fairness logic depends only on the domain ports, never on a concrete
# store or on the HTTP layer.
RULES: dict[str, set[str]] = {
    "domain": {"api", "adapters", "application", "cli", "core"},
    "core": {"api", "adapters", "application", "cli"},
    "application": {"api", "adapters", "cli"},
}


def _layer_for_path(path: Path, source_root: Path) -> str | None:
    try:
        relative = path.relative_to(source_root)
    except ValueError:
        return None
    if len(relative.parts) < 2:
        return None
    return relative.parts[0]


def _module_parts(path: Path, source_root: Path) -> list[str]:
    return [PACKAGE, *path.relative_to(source_root).with_suffix("").parts]


def _layers_of(module_name: str, names: list[str]) -> set[str]:
    """Map an absolute module (plus imported names) onto the layers it touches."""
    parts = module_name.split(".")
    if parts[0] != PACKAGE:
        return set()
    if len(parts) >= 2:
        return {parts[1]} & KNOWN_LAYERS
    return set(names) & KNOWN_LAYERS


def _absolute_import(node: ast.ImportFrom, path: Path, source_root: Path) -> str | None:
    if node.level == 0:
        return node.module
    package_parts = _module_parts(path, source_root)[:-1]
    if node.level - 1 >= len(package_parts):
        return None
    base = package_parts[: len(package_parts) - (node.level - 1)]
    if node.module:
        base = [*base, *node.module.split(".")]
    return ".".join(base)


def imported_layers(node: ast.Import | ast.ImportFrom, path: Path, source_root: Path) -> set[str]:
    if isinstance(node, ast.Import):
        layers: set[str] = set()
        for alias in node.names:
            layers |= _layers_of(alias.name, [])
        return layers
    module_name = _absolute_import(node, path, source_root)
    if module_name is None:
        return set()
    return _layers_of(module_name, [alias.name for alias in node.names])


def check_file(path: Path, source_root: Path = DEFAULT_SOURCE_ROOT) -> list[str]:
    layer = _layer_for_path(path, source_root)
    banned_layers = RULES.get(layer or "", set())
    if not banned_layers:
        return []

    tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
    violations: list[str] = []
    for node in ast.walk(tree):
        if not isinstance(node, (ast.Import, ast.ImportFrom)):
            continue
        for imported in sorted(imported_layers(node, path, source_root) & banned_layers):
            violations.append(
                f"{path}:{node.lineno}: {layer} must not import {PACKAGE}.{imported}"
            )
    return violations


def check_import_boundaries(source_root: Path = DEFAULT_SOURCE_ROOT) -> list[str]:
    violations: list[str] = []
    for path in sorted(source_root.rglob("*.py")):
        violations.extend(check_file(path, source_root))
    return violations


def main() -> None:
    violations = check_import_boundaries()
    if violations:
        raise SystemExit("\n".join(violations))
    print("import boundary checks passed")


if __name__ == "__main__":
    main()
