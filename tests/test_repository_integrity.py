"""Repository-level integrity checks."""

from __future__ import annotations

import re
from pathlib import Path

CONFLICT_PATTERN = re.compile(r"^(<<<<<<<|=======|>>>>>>>)", re.MULTILINE)
IGNORED_PARTS = {".git", "__pycache__", ".mypy_cache", ".pytest_cache", ".venv", "build"}
# Local match cache databases are binary and not part of the source tree.
IGNORED_SUFFIXES = {".db", ".sqlite", ".sqlite3", ".pyc"}


def _source_files(repo_root: Path) -> list[Path]:
    return [
        path
        for path in repo_root.rglob("*")
        if path.is_file()
        and path.suffix not in IGNORED_SUFFIXES
        and not any(part in IGNORED_PARTS for part in path.parts)
    ]


def test_repository_has_no_merge_conflict_markers() -> None:
    """Ensure no files in the repo still contain git conflict markers."""

    repo_root = Path(__file__).resolve().parents[1]
    offending_files = [
        path.relative_to(repo_root)
        for path in _source_files(repo_root)
        if CONFLICT_PATTERN.search(path.read_text(encoding="utf-8", errors="ignore"))
    ]

    assert not offending_files, (
        "The following files still contain git conflict markers: "
        + ", ".join(str(path) for path in offending_files)
    )


def test_every_service_module_has_a_logger() -> None:
    """Service modules log through a module-level ``logging.getLogger``."""

    services = Path(__file__).resolve().parents[1] / "app" / "services"
    missing = [
        path.name
        for path in services.rglob("*.py")
        if path.name != "__init__.py"
        and "logger = logging.getLogger(__name__)" not in path.read_text(encoding="utf-8")
    ]

    assert not missing, f"Service modules without a logger: {', '.join(missing)}"
