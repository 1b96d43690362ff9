"""Filesystem access rooted at a single working directory."""

import logging
import os
from pathlib import Path, PurePosixPath, PureWindowsPath

from .report import WorkspaceError

logger = logging.getLogger(__name__)

DEFAULT_IGNORE = ("**/.git/**", "**/node_modules/**")


def safe_resolve(file_path: str, base_dir: str | Path) -> Path:
    """Resolve a path, ensuring it stays within base_dir.

    Resolves symlinks for both the base directory and the target path
    before checking containment, so neither ``../`` segments nor links
    can escape the root.

    Raises:
        ValueError: If the resolved path escapes the base directory.
    """
    base = Path(base_dir).resolve()

    # Absolute paths are resolved as-is and must still land under base.
    if Path(file_path).is_absolute() or PureWindowsPath(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()

    if resolved.is_relative_to(base):
        return resolved

    raise ValueError(
        f"Path {file_path!r} resolves to {resolved}, "
        f"which is outside base directory {base}"
    )


def check_pattern(pattern: str) -> str | None:
    """Reject patterns that are absolute or contain '..'."""
    if PurePosixPath(pattern).is_absolute() or PureWindowsPath(pattern).is_absolute():
        return f"pattern {pattern!r} must be relative, not absolute"
    if ".." in PurePosixPath(pattern).parts or ".." in PureWindowsPath(pattern).parts:
        return f"pattern {pattern!r} contains '..', which is not allowed"
    return None


def is_ignored(rel_path: str | PurePosixPath, ignore=DEFAULT_IGNORE) -> bool:
    """Check a root-relative posix path against ignore globs."""
    rel = PurePosixPath(rel_path)
    return any(rel.full_match(pattern) for pattern in ignore)


def _prune_dir(rel_dir: PurePosixPath, name: str, ignore) -> bool:
    # Only a "<dir>/**" glob covers everything below a directory. Any other
    # glob is left to the per-file check in is_ignored.
    rel = rel_dir / name
    return any(
        pattern.endswith("/**") and rel.full_match(pattern[:-3]) for pattern in ignore
    )


class Workspace:
    """Filesystem collaborator for the protocol core.

    Every path handed to it is resolved against ``root`` through
    ``safe_resolve``; escapes raise ``ValueError``.
    """

    def __init__(self, root: str | Path = "."):
        path = Path(root).expanduser()
        if not path.exists():
            raise WorkspaceError(f"working directory does not exist: {root}")
        if not path.is_dir():
            raise WorkspaceError(f"working directory is not a directory: {root}")
        self.root = path.resolve()

    def __repr__(self) -> str:
        return f"Workspace({str(self.root)!r})"

    def resolve(self, path: str) -> Path:
        return safe_resolve(path, self.root)

    def relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    def exists(self, path: str) -> bool:
        return self.resolve(path).exists()

    def read_file(self, path: str, encoding: str = "utf-8") -> str:
        return self.resolve(path).read_text(encoding=encoding)

    def write_file(self, path: str, content: str, encoding: str = "utf-8") -> int:
        """Write content verbatim, creating parent directories. Returns bytes written."""
        resolved = self.resolve(path)
        resolved.parent.mkdir(parents=True, exist_ok=True)
        data = content.encode(encoding)
        resolved.write_bytes(data)
        logger.debug("wrote %d bytes to %s", len(data), resolved)
        return len(data)

    def delete(self, path: str) -> None:
        resolved = self.resolve(path)
        if resolved == self.root:
            raise ValueError("refusing to delete the working directory itself")
        resolved.unlink()
        logger.debug("deleted %s", resolved)

    def list_directory(
        self, path: str = ".", ignore=DEFAULT_IGNORE, pattern: str | None = None
    ) -> list[str]:
        """Recursively list files under path as sorted root-relative posix paths.

        Directories matching ``ignore`` are pruned during the walk. When
        ``pattern`` is given, only paths whose root-relative form matches
        the glob are returned.
        """
        start = self.resolve(path)
        if not start.exists():
            return []
        if start.is_file():
            rel = self.relative(start)
            return [] if is_ignored(rel, ignore) else [rel]

        found: list[str] = []
        for dirpath, dirs, files in os.walk(start):
            rel_dir = PurePosixPath(Path(dirpath).relative_to(self.root).as_posix())
            dirs[:] = sorted(d for d in dirs if not _prune_dir(rel_dir, d, ignore))
            for filename in files:
                rel = rel_dir / filename
                if is_ignored(rel, ignore):
                    continue
                if pattern is not None and not rel.full_match(pattern):
                    continue
                # Symlinked files may point outside the root.
                if not (Path(dirpath) / filename).resolve().is_relative_to(self.root):
                    continue
                found.append(rel.as_posix())
        found.sort()
        return found
