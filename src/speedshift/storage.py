"""Flat on-disk storage namespace for Original and Derived files."""

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, List, Optional

from speedshift.exceptions import InvalidName, NotFound
from speedshift.models import FileEntry, FileKind
from speedshift.naming import cascade_targets, is_derived, parse_derived

logger = logging.getLogger(__name__)

# Prefix for outputs still being written. The original extension stays last
# so the encoder can pick the container from it.
PARTIAL_PREFIX = ".partial."


def partial_name(name: str) -> str:
    return PARTIAL_PREFIX + name


def is_partial(name: str) -> bool:
    return name.startswith(PARTIAL_PREFIX)


@dataclass
class DeleteError:
    file: str
    error: str


@dataclass
class DeleteResult:
    """Outcome of a deletion cascade; members are removed independently."""

    requested: str
    deleted: List[str] = field(default_factory=list)
    errors: List[DeleteError] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.errors)

    def to_response(self) -> dict:
        return {
            "success": not self.errors,
            "deletedFiles": list(self.deleted),
            "errors": [{"file": e.file, "error": e.error} for e in self.errors],
            "message": f"Deleted {len(self.deleted)} file(s)",
        }


class FileStore:
    """Storage directory with path-traversal safe name resolution.

    Names are flat: a stored name never contains a path separator.
    """

    def __init__(self, directory):
        self.root = Path(directory).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def resolve(self, name: str) -> Path:
        """Absolute path for ``name``.

        Raises:
            InvalidName: if the name is empty or escapes the storage root.
        """
        if not name or not isinstance(name, str):
            raise InvalidName(name, "Missing filename")
        if "\x00" in name or "/" in name or "\\" in name or name in (".", ".."):
            raise InvalidName(name)

        path = (self.root / name).resolve()
        if path.parent != self.root:
            raise InvalidName(name)
        return path

    def exists(self, name: str) -> bool:
        return not is_partial(name) and self.resolve(name).is_file()

    def names(self) -> List[str]:
        """Visible stored names. Outputs still being written are skipped."""
        return sorted(
            p.name for p in self.root.iterdir() if p.is_file() and not is_partial(p.name)
        )

    def partial_path(self, name: str) -> Path:
        """Where an encoder writes ``name`` until the job succeeds."""
        return self.resolve(partial_name(name))

    def commit(self, name: str) -> Path:
        """Atomically move the finished partial output of ``name`` into place."""
        path = self.resolve(name)
        os.replace(self.partial_path(name), path)
        return path

    def discard(self, name: str) -> None:
        """Remove a leftover partial output of ``name``, if any."""
        try:
            self.partial_path(name).unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove partial output for %s: %s", name, e)

    def entry(self, name: str) -> FileEntry:
        path = self.resolve(name)
        if is_partial(name) or not path.is_file():
            raise NotFound(name)
        stat = path.stat()
        parsed = parse_derived(name)
        return FileEntry(
            storedName=name,
            kind=FileKind.DERIVED if parsed else FileKind.ORIGINAL,
            sourceName=parsed[0] if parsed else None,
            speedFactor=parsed[1] if parsed else None,
            mtime=stat.st_mtime,
            size=stat.st_size,
        )

    def entries(self) -> List[FileEntry]:
        entries = []
        for name in self.names():
            try:
                entries.append(self.entry(name))
            except NotFound:
                # Removed between listing and stat
                continue
        return entries

    def save(self, name: str, fileobj: BinaryIO) -> FileEntry:
        """Write an upload under ``name``, replacing any existing file."""
        if is_partial(name):
            raise InvalidName(name, "Filename uses a reserved prefix")
        path = self.resolve(name)
        with open(path, "wb") as buffer:
            shutil.copyfileobj(fileobj, buffer)
        return self.entry(name)

    def latest_derived(self) -> Optional[str]:
        """Most recently modified Derived file, if any."""
        derived = [e for e in self.entries() if e.kind == FileKind.DERIVED]
        if not derived:
            return None
        return max(derived, key=lambda e: e.mtime).storedName

    def delete_cascade(self, name: str) -> DeleteResult:
        """Delete ``name`` and, for an Original, every Derived file of it.

        Removals are independent; failures are collected, not raised.

        Raises:
            InvalidName: for names escaping the storage root.
            NotFound: if neither the file nor any Derived version exists.
        """
        self.resolve(name)
        names = self.names()

        targets = [name] if name in names else []
        if not is_derived(name):
            targets.extend(cascade_targets(name, names))
        if not targets:
            raise NotFound(name)

        result = DeleteResult(requested=name)
        for target in targets:
            try:
                (self.root / target).unlink()
                result.deleted.append(target)
                logger.info("Deleted: %s", target)
            except OSError as e:
                logger.error("Error deleting %s: %s", target, e)
                result.errors.append(DeleteError(file=target, error=str(e)))
        return result
