"""Technology detection: changed files + repository tree → rule categories.

Two signals, both purely data-driven:
  - the extensions of the changed files (what languages the diff touches)
  - marker files anywhere in the tree (which frameworks the repo is built on)

The marker scan covers the whole tree, not just the diff: a one-line change
to a Django view still needs the Django rules even when settings.py is
untouched.
"""

from __future__ import annotations

import fnmatch
import logging
from pathlib import Path
from typing import Callable, Iterable

logger = logging.getLogger(__name__)

_EXTENSION_LANGUAGES = {
    ".py": "python",
    ".pyi": "python",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".kt": "kotlin",
    ".rb": "ruby",
    ".sql": "sql",
    ".sh": "shell",
}

# (basename pattern, content substring, framework tag)
_MARKERS = (
    ("manage.py", "django", "django"),
    ("requirements*.txt", "django", "django"),
    ("pyproject.toml", "django", "django"),
    ("requirements*.txt", "fastapi", "fastapi"),
    ("pyproject.toml", "fastapi", "fastapi"),
    ("package.json", '"react"', "react"),
    ("package.json", '"vue"', "vue"),
    ("package.json", '"next"', "nextjs"),
    ("Dockerfile", "FROM", "docker"),
    ("go.mod", "github.com/gin-gonic/gin", "gin"),
    ("Cargo.toml", "tokio", "tokio"),
)

# Skipped by both scans: vendored and generated trees are not the project.
_IGNORED_DIRS = ("node_modules/", "vendor/", ".git/", "dist/", "build/")


def is_excluded(filename: str, patterns: Iterable[str]) -> bool:
    """Return True if filename matches any exclude pattern.

    Supports fnmatch globs on the full path or the basename, and directory
    names/prefixes ("migrations/" matches "app/migrations/0001.py").
    """
    for pattern in patterns:
        if fnmatch.fnmatch(filename, pattern):
            return True
        if fnmatch.fnmatch(filename.rsplit("/", 1)[-1], pattern):
            return True
        prefix = pattern.rstrip("/") + "/"
        if filename.startswith(prefix) or ("/" + prefix) in filename:
            return True
    return False


def detect_languages(changed_files: Iterable[str], exclude: Iterable[str] = ()) -> frozenset[str]:
    exclude = tuple(exclude)
    languages = set()
    for path in changed_files:
        if is_excluded(path, exclude):
            continue
        language = _EXTENSION_LANGUAGES.get(Path(path).suffix.lower())
        if language:
            languages.add(language)
    return frozenset(languages)


def detect_frameworks(
    tree_paths: Iterable[str],
    read_file: Callable[[str], str | None],
    exclude: Iterable[str] = (),
) -> frozenset[str]:
    exclude = tuple(exclude) + _IGNORED_DIRS
    frameworks = set()
    for path in sorted(set(tree_paths)):
        if is_excluded(path, exclude):
            continue
        basename = path.rsplit("/", 1)[-1]
        candidates = [
            (needle, tag)
            for pattern, needle, tag in _MARKERS
            if tag not in frameworks and fnmatch.fnmatch(basename, pattern)
        ]
        if not candidates:
            continue
        content = read_file(path)
        if content is None:
            logger.debug("Marker file %s could not be read; skipping.", path)
            continue
        for needle, tag in candidates:
            if needle in content:
                frameworks.add(tag)
    return frozenset(frameworks)


def detect_technologies(
    changed_files: Iterable[str],
    tree_paths: Iterable[str],
    read_file: Callable[[str], str | None],
    exclude: Iterable[str] = (),
) -> frozenset[str]:
    """Return the rule-category tags active for a change.

    Identical inputs always give an identical set, whatever the order of
    ``changed_files`` or ``tree_paths``. ``read_file`` returns None for a
    file that cannot be read, which simply means no framework is detected
    from it.
    """
    exclude = tuple(exclude)
    tags = detect_languages(changed_files, exclude) | detect_frameworks(tree_paths, read_file, exclude)
    logger.debug("Detected rule categories: %s", ", ".join(sorted(tags)) or "(none)")
    return tags


def local_tree(root: str | Path) -> tuple[list[str], Callable[[str], str | None]]:
    """Return ``(paths, read_file)`` for a working copy on disk."""
    root = Path(root)
    paths = [
        p.relative_to(root).as_posix()
        for p in root.rglob("*")
        if p.is_file() and ".git" not in p.relative_to(root).parts
    ]

    def read_file(path: str) -> str | None:
        try:
            return (root / path).read_text(encoding="utf-8", errors="replace")
        except OSError:
            return None

    return paths, read_file
