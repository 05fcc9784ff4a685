"""Deterministic writers for the `ar` container and the gzipped tar members."""

from collections.abc import Iterable
import gzip
import io
import struct
import tarfile

from attrs import define

from ..models import FileEntry

AR_GLOBAL_MAGIC: bytes = b"!<arch>\n"
AR_FILE_MAGIC: bytes = b"`\n"

# name, mtime, uid, gid, mode (octal), size, file magic
AR_HEADER_FORMAT = "16s12s6s6s8s10s2s"
AR_HEADER_SIZE = struct.calcsize(AR_HEADER_FORMAT)

if AR_HEADER_SIZE != 60:
    raise AssertionError(f"Calculated ar header size is {AR_HEADER_SIZE}, expected 60.")

DEB_FORMAT_VERSION: bytes = b"2.0\n"
OWNER_NAME = "root"


def _field(value: str | int, width: int) -> bytes:
    text = str(value).encode("ascii")
    if len(text) > width:
        raise ValueError(f"ar header field {text!r} exceeds {width} bytes")
    return text.ljust(width, b" ")


@define(frozen=True, slots=True)
class ArMember:
    name: str
    data: bytes
    mtime: int = 0
    mode: int = 0o100644

    def pack_header(self) -> bytes:
        return struct.pack(
            AR_HEADER_FORMAT,
            _field(self.name, 16),
            _field(self.mtime, 12),
            _field(0, 6),
            _field(0, 6),
            _field(f"{self.mode:o}", 8),
            _field(len(self.data), 10),
            AR_FILE_MAGIC,
        )

    @classmethod
    def unpack_header(cls, buffer: bytes) -> tuple[str, int, int, int]:
        """Returns (name, mtime, mode, size) for a 60-byte header."""
        if len(buffer) != AR_HEADER_SIZE:
            raise ValueError(f"Buffer size {len(buffer)} != {AR_HEADER_SIZE}")
        name, mtime, _uid, _gid, mode, size, magic = struct.unpack(AR_HEADER_FORMAT, buffer)
        if magic != AR_FILE_MAGIC:
            raise ValueError("Invalid ar member magic.")
        return (
            name.decode("ascii").rstrip(" ").rstrip("/"),
            int(mtime.strip() or 0),
            int(mode.strip() or b"0", 8),
            int(size.strip()),
        )


def write_ar(members: Iterable[ArMember]) -> bytes:
    out = io.BytesIO()
    out.write(AR_GLOBAL_MAGIC)
    for member in members:
        out.write(member.pack_header())
        out.write(member.data)
        if len(member.data) % 2:
            out.write(b"\n")
    return out.getvalue()


def read_ar(data: bytes) -> list[ArMember]:
    if not data.startswith(AR_GLOBAL_MAGIC):
        raise ValueError(f"Invalid ar magic. Found {data[:8]!r}.")
    members: list[ArMember] = []
    offset = len(AR_GLOBAL_MAGIC)
    while offset < len(data):
        name, mtime, mode, size = ArMember.unpack_header(data[offset:offset + AR_HEADER_SIZE])
        offset += AR_HEADER_SIZE
        body = data[offset:offset + size]
        if len(body) != size:
            raise ValueError(f"Truncated ar member '{name}'.")
        members.append(ArMember(name=name, data=body, mtime=mtime, mode=mode))
        offset += size + (size % 2)
    return members


def normalized_mode(entry: FileEntry) -> int:
    if entry.is_dir:
        return 0o755
    if entry.is_symlink:
        return 0o777
    return 0o755 if entry.is_executable else 0o644


def build_tar_gz(entries: Iterable[tuple[str, FileEntry]], mtime: int) -> bytes:
    """
    Packs `entries` (relative POSIX paths) as `./path` members.

    Member order, ownership, timestamps and modes are fixed, so equal
    inputs give equal bytes.
    """
    raw = io.BytesIO()
    with tarfile.open(fileobj=raw, mode="w", format=tarfile.GNU_FORMAT) as tar:
        root = tarfile.TarInfo("./")
        root.type = tarfile.DIRTYPE
        _stamp(root, 0o755, mtime)
        tar.addfile(root)
        for rel_path, entry in sorted(entries, key=lambda item: item[0]):
            if not rel_path:
                continue
            info = tarfile.TarInfo(f"./{rel_path}")
            _stamp(info, normalized_mode(entry), mtime)
            if entry.is_dir:
                info.name += "/"
                info.type = tarfile.DIRTYPE
                tar.addfile(info)
            elif entry.is_symlink:
                info.type = tarfile.SYMTYPE
                info.linkname = entry.target
                tar.addfile(info)
            else:
                info.size = len(entry.data)
                tar.addfile(info, io.BytesIO(entry.data))
    return gzip.compress(raw.getvalue(), compresslevel=9, mtime=0)


def _stamp(info: tarfile.TarInfo, mode: int, mtime: int) -> None:
    info.mode = mode
    info.mtime = mtime
    info.uid = 0
    info.gid = 0
    info.uname = OWNER_NAME
    info.gname = OWNER_NAME
