from __future__ import annotations

import importlib.util
from pathlib import Path
from types import ModuleType

ROOT = Path(__file__).resolve().parents[1]


def _load_checker_module() -> ModuleType:
    module_path = ROOT / "tools" / "check_imports.py"
    spec = importlib.util.spec_from_file_location("check_imports_tool", module_path)
    assert spec is not None
    loader = spec.loader
    assert loader is not None
    module = importlib.util.module_from_spec(spec)
    loader.exec_module(module)
    return module


def _write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def test_check_file_allows_core_importing_domain(tmp_path: Path) -> None:
    checker = _load_checker_module()
    source_root = tmp_path / "src" / "story_relay"
    core_file = source_root / "core" / "locking.py"
    _write(core_file, "from story_relay.domain.models import Story\nfrom . import cooldown\n")
    assert checker.check_file(core_file, source_root) == []


def test_check_file_rejects_core_importing_adapters(tmp_path: Path) -> None:
    checker = _load_checker_module()
    source_root = tmp_path / "src" / "story_relay"
    core_file = source_root / "core" / "locking.py"
    _write(core_file, "import os\n\nfrom story_relay.adapters import sqlite_story_store\n")
    violations = checker.check_file(core_file, source_root)
    assert len(violations) == 1
    assert violations[0].endswith(":3: core must not import story_relay.adapters")


def test_check_file_resolves_relative_and_package_level_imports(tmp_path: Path) -> None:
    checker = _load_checker_module()
    source_root = tmp_path / "src" / "story_relay"
    domain_file = source_root / "domain" / "models.py"
    _write(domain_file, "from ..api import contracts\nfrom story_relay import core\n")
    violations = checker.check_file(domain_file, source_root)
    assert [violation.split(": ", 1)[1] for violation in violations] == [
        "domain must not import story_relay.api",
        "domain must not import story_relay.core",
    ]


def test_unrestricted_layers_are_not_checked(tmp_path: Path) -> None:
    checker = _load_checker_module()
    source_root = tmp_path / "src" / "story_relay"
    api_file = source_root / "api" / "app.py"
    _write(api_file, "from story_relay.adapters import sqlite_story_store\n")
    assert checker.check_file(api_file, source_root) == []


def test_repository_sources_respect_boundaries() -> None:
    checker = _load_checker_module()
    assert checker.check_import_boundaries() == []
