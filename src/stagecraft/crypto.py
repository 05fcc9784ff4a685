"""
Centralized digest operations for stagecraft.
"""

from collections.abc import Iterable
from pathlib import Path

from cryptography.hazmat.primitives import hashes

from .models import FileEntry

DEFAULT_ALGORITHM = "sha256"
CHUNK_SIZE = 1024 * 1024

_ALGORITHMS: dict[str, type[hashes.HashAlgorithm]] = {
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}


def parse_digest(digest: str) -> tuple[str, str]:
    """Splits 'algo:hex' (or a bare sha256 hex string) into (algo, hex)."""
    algorithm, sep, value = digest.strip().partition(":")
    if not sep:
        algorithm, value = DEFAULT_ALGORITHM, algorithm
    algorithm = algorithm.lower()
    if algorithm not in _ALGORITHMS:
        raise ValueError(f"Unsupported digest algorithm '{algorithm}'.")
    value = value.lower()
    expected_len = _ALGORITHMS[algorithm].digest_size * 2
    if len(value) != expected_len or any(c not in "0123456789abcdef" for c in value):
        raise ValueError(f"Malformed {algorithm} digest '{value}'.")
    return algorithm, value


class IncrementalDigest:
    """Hashes data fed in chunks, so large downloads never sit in memory."""

    def __init__(self, algorithm: str = DEFAULT_ALGORITHM) -> None:
        self.algorithm = algorithm
        self._hash = hashes.Hash(_ALGORITHMS[algorithm]())

    def update(self, chunk: bytes) -> None:
        self._hash.update(chunk)

    def hexdigest(self) -> str:
        return self._hash.finalize().hex()


def file_digest(path: Path, algorithm: str = DEFAULT_ALGORITHM) -> str:
    digest = IncrementalDigest(algorithm)
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def md5_hex(data: bytes) -> str:
    """MD5 as dpkg expects it in `md5sums`; used for listings, never for trust."""
    h = hashes.Hash(hashes.MD5())
    h.update(data)
    return h.finalize().hex()


def tree_digest(entries: Iterable[tuple[str, FileEntry]]) -> str:
    """Content address of a file tree: path, kind, mode, target and data, sorted by path."""
    digest = IncrementalDigest()
    for rel_path, entry in sorted(entries, key=lambda item: item[0]):
        header = f"{rel_path}\0{entry.kind}\0{entry.mode:o}\0{entry.target}\0{len(entry.data)}\0"
        digest.update(header.encode())
        digest.update(entry.data)
    return f"{DEFAULT_ALGORITHM}:{digest.hexdigest()}"
