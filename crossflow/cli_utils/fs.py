"""Filesystem helpers for locating workflow definition files."""

from __future__ import annotations

import fnmatch
from pathlib import Path
from typing import Iterable, Set

DEFINITION_SUFFIXES = (".yaml", ".yml")

_ALWAYS_IGNORED = {
    ".git/",
    ".venv/",
    "venv/",
    "__pycache__/",
    "node_modules/",
    "build/",
    "dist/",
    "*.egg-info/",
}


def _load_gitignore_patterns(search_path: Path) -> Set[str]:
    """Collect patterns from ``.gitignore`` files in ``search_path`` and its parents."""
    patterns: Set[str] = set(_ALWAYS_IGNORED)
    current = search_path
    while True:
        gitignore = current / ".gitignore"
        if gitignore.is_file():
            try:
                lines = gitignore.read_text(encoding="utf-8").splitlines()
            except (OSError, UnicodeDecodeError):
                lines = []
            patterns.update(
                line.strip()
                for line in lines
                if line.strip() and not line.strip().startswith(("#", "!"))
            )
        if current == current.parent:
            break
        current = current.parent
    return patterns


def _should_ignore_path(path: Path, patterns: Set[str], base_path: Path) -> bool:
    """Return ``True`` when ``path`` matches one of the gitignore ``patterns``."""
    try:
        relative = path.relative_to(base_path)
    except ValueError:
        return False

    rel_str = relative.as_posix()
    for pattern in patterns:
        if pattern.endswith("/"):
            # Directory pattern: match any parent directory component.
            dir_pattern = pattern.rstrip("/").lstrip("/")
            if any(fnmatch.fnmatch(part, dir_pattern) for part in relative.parts[:-1]):
                return True
            continue
        bare = pattern.lstrip("/")
        if fnmatch.fnmatch(rel_str, bare) or fnmatch.fnmatch(path.name, bare):
            return True
        if any(fnmatch.fnmatch(part, bare) for part in relative.parts[:-1]):
            return True
    return False


def iter_definition_files(
    search_path: Path, respect_gitignore: bool = True
) -> Iterable[Path]:
    """Yield YAML files under ``search_path`` in a stable order."""

    if search_path.is_file():
        if search_path.suffix in DEFINITION_SUFFIXES:
            yield search_path
        return

    patterns = _load_gitignore_patterns(search_path) if respect_gitignore else set()
    candidates = sorted(
        p for suffix in DEFINITION_SUFFIXES for p in search_path.rglob(f"*{suffix}")
    )
    for path in candidates:
        if respect_gitignore and _should_ignore_path(path, patterns, search_path):
            continue
        if path.is_file():
            yield path
