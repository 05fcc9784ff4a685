"""
The per-stage filesystem view: an arena of path -> entry bindings.

A view is plain data. Stages receive their own copy, mutate it, and only
materialize it into a real directory for as long as their commands run.
"""

from collections.abc import Iterable, Iterator
import os
from pathlib import Path
import posixpath
import stat

from .crypto import tree_digest
from .models import FileEntry, normalize_path

DIR_ENTRY = FileEntry(kind="dir", mode=0o755)


class FilesystemView:
    def __init__(
        self,
        entries: dict[str, FileEntry] | None = None,
        label: str = "",
    ) -> None:
        self._entries: dict[str, FileEntry] = dict(entries or {})
        self.label = label

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path: str) -> bool:
        return self.exists(path)

    def __iter__(self) -> Iterator[tuple[str, FileEntry]]:
        return iter(sorted(self._entries.items()))

    def copy(self, label: str | None = None) -> "FilesystemView":
        # Entries are frozen, so a shallow dict copy gives full independence.
        return FilesystemView(self._entries, label=self.label if label is None else label)

    def exists(self, path: str) -> bool:
        key = normalize_path(path)
        return key == "" or key in self._entries

    def get(self, path: str) -> FileEntry | None:
        key = normalize_path(path)
        if key == "":
            return DIR_ENTRY
        return self._entries.get(key)

    def is_dir(self, path: str) -> bool:
        entry = self.get(path)
        return entry is not None and entry.is_dir

    def paths(self) -> list[str]:
        return sorted(self._entries)

    def _ensure_parents(self, key: str) -> None:
        parent = posixpath.dirname(key)
        while parent:
            existing = self._entries.get(parent)
            if existing is None or not existing.is_dir:
                self._entries[parent] = DIR_ENTRY
            parent = posixpath.dirname(parent)

    def add_dir(self, path: str, mode: int = 0o755) -> None:
        key = normalize_path(path)
        if not key:
            return
        self._ensure_parents(key)
        self._entries[key] = FileEntry(kind="dir", mode=mode)

    def add_file(self, path: str, data: bytes, mode: int = 0o644) -> None:
        key = normalize_path(path)
        if not key:
            raise ValueError("Cannot bind a file at the view root.")
        self.remove(key)
        self._ensure_parents(key)
        self._entries[key] = FileEntry(kind="file", data=data, mode=mode)

    def remove(self, path: str) -> None:
        key = normalize_path(path)
        if not key:
            self._entries.clear()
            return
        prefix = key + "/"
        for existing in [p for p in self._entries if p == key or p.startswith(prefix)]:
            del self._entries[existing]

    def subtree(self, path: str) -> list[tuple[str, FileEntry]]:
        """
        Returns the node at `path` and everything beneath it, keyed relative
        to `path`. The node itself is keyed "". Missing paths yield [].
        """
        key = normalize_path(path)
        node = self.get(key)
        if node is None:
            return []
        result: list[tuple[str, FileEntry]] = [("", node)]
        if node.is_dir:
            prefix = key + "/" if key else ""
            result.extend(
                (p[len(prefix):], entry)
                for p, entry in sorted(self._entries.items())
                if p.startswith(prefix) and p != key
            )
        return result

    def graft(self, dst: str, entries: Iterable[tuple[str, FileEntry]]) -> None:
        """Binds `entries` (as produced by `subtree`) beneath `dst`."""
        base = normalize_path(dst)
        for rel_path, entry in entries:
            key = posixpath.join(base, rel_path) if rel_path else base
            key = key.rstrip("/")
            if not key:
                continue
            if entry.is_dir:
                existing = self._entries.get(key)
                if existing is not None and existing.is_dir:
                    continue
                self.remove(key)
            else:
                self.remove(key)
            self._ensure_parents(key)
            self._entries[key] = entry

    def digest(self) -> str:
        return tree_digest(self._entries.items())

    def materialize(self, root: Path) -> None:
        """Writes the view into `root`, which must exist."""
        for key, entry in sorted(self._entries.items()):
            target = root / key
            if entry.is_dir:
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            if entry.is_symlink:
                os.symlink(entry.target, target)
            else:
                target.write_bytes(entry.data)
                target.chmod(entry.mode)
        for key, entry in self._entries.items():
            if entry.is_dir:
                (root / key).chmod(entry.mode | stat.S_IWUSR | stat.S_IXUSR)

    @classmethod
    def capture(cls, root: Path, label: str = "") -> "FilesystemView":
        """Reads a real directory tree back into a view."""
        entries: dict[str, FileEntry] = {}
        for dir_path, dir_names, file_names in os.walk(root, followlinks=False):
            current = Path(dir_path)
            for name in sorted(dir_names + file_names):
                full = current / name
                key = full.relative_to(root).as_posix()
                info = full.lstat()
                if stat.S_ISLNK(info.st_mode):
                    entries[key] = FileEntry(kind="symlink", target=os.readlink(full), mode=0o777)
                elif stat.S_ISDIR(info.st_mode):
                    entries[key] = FileEntry(kind="dir", mode=stat.S_IMODE(info.st_mode))
                elif stat.S_ISREG(info.st_mode):
                    entries[key] = FileEntry(
                        kind="file",
                        data=full.read_bytes(),
                        mode=stat.S_IMODE(info.st_mode),
                    )
        return cls(entries, label=label)
