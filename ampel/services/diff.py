"""Diff normalization across provider diff formats.

Each provider reports file changes with its own vocabulary. These helpers map
them onto the canonical :class:`~ampel.models.DiffFile`, detect language and
binary content from file extensions, and never raise on unexpected provider
values: unknown statuses fall back to ``modified`` and malformed entries are
skipped.
"""

import os
import re
from dataclasses import dataclass
from logging import getLogger
from typing import Any

from ampel.models import DiffFile, DiffStatus

logger = getLogger(__name__)

GITHUB_STATUS_MAP: dict[str, DiffStatus] = {
    "added": DiffStatus.ADDED,
    "modified": DiffStatus.MODIFIED,
    "removed": DiffStatus.DELETED,
    "renamed": DiffStatus.RENAMED,
    "copied": DiffStatus.COPIED,
    "unchanged": DiffStatus.UNCHANGED,
    # GitHub reports mode-only changes as "changed"
    "changed": DiffStatus.MODIFIED,
}

# Keys are case-folded before lookup; diffstat responses use lowercase values.
BITBUCKET_STATUS_MAP: dict[str, DiffStatus] = {
    "added": DiffStatus.ADDED,
    "modified": DiffStatus.MODIFIED,
    "removed": DiffStatus.DELETED,
    "moved": DiffStatus.RENAMED,
    "renamed": DiffStatus.RENAMED,
}

EXTENSION_TO_LANGUAGE: dict[str, str] = {
    ".rs": "Rust",
    ".ts": "TypeScript",
    ".tsx": "TypeScript",
    ".js": "JavaScript",
    ".jsx": "JavaScript",
    ".mjs": "JavaScript",
    ".cjs": "JavaScript",
    ".py": "Python",
    ".pyi": "Python",
    ".go": "Go",
    ".java": "Java",
    ".kt": "Kotlin",
    ".kts": "Kotlin",
    ".scala": "Scala",
    ".cpp": "C++",
    ".cc": "C++",
    ".cxx": "C++",
    ".hpp": "C++",
    ".c": "C",
    ".h": "C",
    ".cs": "C#",
    ".rb": "Ruby",
    ".php": "PHP",
    ".swift": "Swift",
    ".m": "Objective-C",
    ".dart": "Dart",
    ".ex": "Elixir",
    ".exs": "Elixir",
    ".erl": "Erlang",
    ".hs": "Haskell",
    ".lua": "Lua",
    ".pl": "Perl",
    ".r": "R",
    ".sh": "Shell",
    ".bash": "Shell",
    ".zsh": "Shell",
    ".ps1": "PowerShell",
    ".sql": "SQL",
    ".html": "HTML",
    ".htm": "HTML",
    ".css": "CSS",
    ".scss": "SCSS",
    ".sass": "SCSS",
    ".less": "Less",
    ".vue": "Vue",
    ".svelte": "Svelte",
    ".json": "JSON",
    ".yaml": "YAML",
    ".yml": "YAML",
    ".toml": "TOML",
    ".xml": "XML",
    ".md": "Markdown",
    ".markdown": "Markdown",
    ".rst": "reStructuredText",
    ".graphql": "GraphQL",
    ".proto": "Protocol Buffers",
    ".tf": "Terraform",
}

# Files identified by name rather than extension
FILENAME_TO_LANGUAGE: dict[str, str] = {
    "dockerfile": "Dockerfile",
    "makefile": "Makefile",
    "gemfile": "Ruby",
    "rakefile": "Ruby",
    "jenkinsfile": "Groovy",
}

BINARY_EXTENSIONS: frozenset[str] = frozenset(
    {
        # Images
        ".png",
        ".jpg",
        ".jpeg",
        ".gif",
        ".bmp",
        ".ico",
        ".webp",
        ".tiff",
        ".psd",
        # Documents
        ".pdf",
        # Archives
        ".zip",
        ".tar",
        ".gz",
        ".tgz",
        ".bz2",
        ".xz",
        ".7z",
        ".rar",
        ".jar",
        # Executables and libraries
        ".bin",
        ".exe",
        ".dll",
        ".so",
        ".dylib",
        ".wasm",
        ".class",
        ".o",
        ".a",
        # Fonts
        ".woff",
        ".woff2",
        ".ttf",
        ".otf",
    }
)

_GIT_DIFF_HEADER_RE = re.compile(r"^diff --git a/(.+?) b/(.+)$")


@dataclass(frozen=True)
class DiffSummary:
    """Ordered diff files with aggregate totals."""

    files: list[DiffFile]
    total_files: int
    total_additions: int
    total_deletions: int


def _extension(file_path: str) -> str:
    return os.path.splitext(os.path.basename(file_path))[1].lower()


def detect_language(file_path: str) -> str | None:
    """Detect the programming language of a file from its name.

    Returns None when the extension is not recognized.
    """
    basename = os.path.basename(file_path).lower()
    if basename in FILENAME_TO_LANGUAGE:
        return FILENAME_TO_LANGUAGE[basename]
    return EXTENSION_TO_LANGUAGE.get(_extension(file_path))


def is_binary_file(file_path: str) -> bool:
    """Check whether a file is binary based on its extension (case-insensitive)."""
    return _extension(file_path) in BINARY_EXTENSIONS


def _log_unmapped(provider: str, value: Any) -> None:
    logger.warning(f"Unmapped {provider} diff status {value!r}, defaulting to modified")


def map_github_status(value: Any) -> DiffStatus:
    status = GITHUB_STATUS_MAP.get(value) if isinstance(value, str) else None
    if status is None:
        _log_unmapped("github", value)
        return DiffStatus.MODIFIED
    return status


def map_gitlab_status(new_file: Any, deleted_file: Any, renamed_file: Any) -> DiffStatus:
    """Derive a status from GitLab's boolean flags."""
    if new_file is True:
        return DiffStatus.ADDED
    if deleted_file is True:
        return DiffStatus.DELETED
    if renamed_file is True:
        return DiffStatus.RENAMED
    return DiffStatus.MODIFIED


def map_bitbucket_status(value: Any) -> DiffStatus:
    status = BITBUCKET_STATUS_MAP.get(value.casefold()) if isinstance(value, str) else None
    if status is None:
        _log_unmapped("bitbucket", value)
        return DiffStatus.MODIFIED
    return status


def _non_negative(value: Any, file_path: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return 0
    if number < 0:
        logger.warning(f"Negative line count {number} for {file_path}, clamping to 0")
        return 0
    return number


def build_diff_file(
    file_path: str,
    status: DiffStatus,
    additions: Any = 0,
    deletions: Any = 0,
    patch: str | None = None,
    previous_filename: str | None = None,
) -> DiffFile:
    """Build a canonical diff file.

    ``changes`` is always recomputed, binary files never carry a patch and
    ``previous_filename`` is only kept for renames.
    """
    adds = _non_negative(additions, file_path)
    dels = _non_negative(deletions, file_path)
    binary = is_binary_file(file_path)
    return DiffFile(
        file_path=file_path,
        status=status,
        additions=adds,
        deletions=dels,
        changes=adds + dels,
        patch=None if binary or not patch else patch,
        previous_filename=previous_filename if status == DiffStatus.RENAMED and previous_filename else None,
        language=detect_language(file_path),
        is_binary=binary,
    )


def count_patch_lines(patch: str | None) -> tuple[int, int]:
    """Count added and removed lines in a unified diff patch."""
    if not patch:
        return 0, 0
    additions = 0
    deletions = 0
    for line in patch.splitlines():
        if line.startswith("+++") or line.startswith("---"):
            continue
        if line.startswith("+"):
            additions += 1
        elif line.startswith("-"):
            deletions += 1
    return additions, deletions


def split_git_diff(raw_diff: str | None) -> dict[str, str]:
    """Split a multi-file ``git diff`` into per-file patches keyed by new path."""
    patches: dict[str, str] = {}
    if not raw_diff:
        return patches

    current_path: str | None = None
    current_lines: list[str] = []
    for line in raw_diff.splitlines():
        match = _GIT_DIFF_HEADER_RE.match(line)
        if match:
            if current_path is not None:
                patches[current_path] = "\n".join(current_lines)
            current_path = match.group(2)
            current_lines = []
            continue
        if current_path is None:
            continue
        # Hunks start at the first "@@"; file headers before that are dropped.
        if current_lines or line.startswith("@@"):
            current_lines.append(line)

    if current_path is not None:
        patches[current_path] = "\n".join(current_lines)
    return patches


def _entries(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, dict):
        payload = payload.get("values", payload.get("changes", []))
    if not isinstance(payload, list):
        return []
    return [entry for entry in payload if isinstance(entry, dict)]


def normalize_github_files(payload: Any) -> list[DiffFile]:
    """Normalize GitHub ``/pulls/{n}/files`` entries."""
    files: list[DiffFile] = []
    for entry in _entries(payload):
        file_path = entry.get("filename")
        if not file_path:
            logger.warning("Skipping GitHub diff entry without a filename")
            continue
        files.append(
            build_diff_file(
                file_path,
                map_github_status(entry.get("status")),
                additions=entry.get("additions", 0),
                deletions=entry.get("deletions", 0),
                patch=entry.get("patch"),
                previous_filename=entry.get("previous_filename"),
            )
        )
    return files


def normalize_gitlab_diffs(payload: Any) -> list[DiffFile]:
    """Normalize GitLab merge request diff entries.

    GitLab does not report per-file line counts, so they are counted from the patch.
    """
    files: list[DiffFile] = []
    for entry in _entries(payload):
        file_path = entry.get("new_path") or entry.get("old_path")
        if not file_path:
            logger.warning("Skipping GitLab diff entry without a path")
            continue
        patch = entry.get("diff") or None
        additions, deletions = count_patch_lines(patch)
        files.append(
            build_diff_file(
                file_path,
                map_gitlab_status(entry.get("new_file"), entry.get("deleted_file"), entry.get("renamed_file")),
                additions=additions,
                deletions=deletions,
                patch=patch,
                previous_filename=entry.get("old_path"),
            )
        )
    return files


def normalize_bitbucket_diffstat(payload: Any, patches: dict[str, str] | None = None) -> list[DiffFile]:
    """Normalize Bitbucket diffstat entries, attaching patches split from the raw diff."""
    patches = patches or {}
    files: list[DiffFile] = []
    for entry in _entries(payload):
        new = entry.get("new") if isinstance(entry.get("new"), dict) else {}
        old = entry.get("old") if isinstance(entry.get("old"), dict) else {}
        file_path = new.get("path") or old.get("path")
        if not file_path:
            logger.warning("Skipping Bitbucket diffstat entry without a path")
            continue
        files.append(
            build_diff_file(
                file_path,
                map_bitbucket_status(entry.get("status")),
                additions=entry.get("lines_added", 0),
                deletions=entry.get("lines_removed", 0),
                patch=patches.get(file_path),
                previous_filename=old.get("path"),
            )
        )
    return files


def summarize_diff(files: list[DiffFile]) -> DiffSummary:
    return DiffSummary(
        files=files,
        total_files=len(files),
        total_additions=sum(f.additions for f in files),
        total_deletions=sum(f.deletions for f in files),
    )
