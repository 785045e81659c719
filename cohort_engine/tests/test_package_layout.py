"""
The engine package stands alone: nothing outside its tests imports the
service shell, so importing it never loads service settings or .env.
"""

import ast
from pathlib import Path

import pytest

ENGINE_ROOT = Path(__file__).resolve().parent.parent
ENGINE_MODULES = sorted(p for p in ENGINE_ROOT.rglob("*.py") if "tests" not in p.parts)


def imported_modules(path: Path):
    tree = ast.parse(path.read_text(encoding="utf-8"))
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                yield alias.name
        elif isinstance(node, ast.ImportFrom) and node.level == 0 and node.module:
            yield node.module


class TestEngineLayering:

    def test_modules_found(self):
        assert ENGINE_ROOT / "records.py" in ENGINE_MODULES

    @pytest.mark.parametrize("path", ENGINE_MODULES, ids=lambda p: str(p.relative_to(ENGINE_ROOT)))
    def test_no_service_imports(self, path):
        offending = [name for name in imported_modules(path) if name.split(".")[0] == "cohort_service"]
        assert offending == []
