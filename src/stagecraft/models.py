from collections.abc import Iterable, Mapping

from attrs import define, field

LOCAL_SOURCE = "local"
SCRATCH_BASE = "scratch"
IMAGE_PREFIX = "image:"

REQUIRED_CONTROL_FIELDS: tuple[str, ...] = (
    "Package",
    "Version",
    "Architecture",
    "Maintainer",
    "Description",
)


def normalize_path(path: str) -> str:
    """Turns a stage path (absolute or relative) into a view-relative POSIX key."""
    parts: list[str] = []
    for part in path.replace("\\", "/").split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if parts:
                parts.pop()
            continue
        parts.append(part)
    return "/".join(parts)


def _to_tuple(value: Iterable) -> tuple:
    return tuple(value)


def _to_pairs(value: Mapping[str, str] | Iterable[tuple[str, str]]) -> tuple:
    items = value.items() if isinstance(value, Mapping) else value
    return tuple((str(k), str(v)) for k, v in items)


@define(frozen=True, slots=True)
class BuildArg:
    name: str
    default: str | None = None


@define(frozen=True, slots=True)
class CopyOperation:
    source: str
    src: str
    dst: str

    @property
    def is_local(self) -> bool:
        return self.source == LOCAL_SOURCE


@define(frozen=True, slots=True)
class ExternalDependency:
    url: str
    digest: str
    destination: str


@define(frozen=True, slots=True)
class Stage:
    name: str
    base: str = SCRATCH_BASE
    args: tuple[BuildArg, ...] = field(default=(), converter=_to_tuple)
    env: tuple[tuple[str, str], ...] = field(default=(), converter=_to_pairs)
    commands: tuple[str, ...] = field(default=(), converter=_to_tuple)
    copies: tuple[CopyOperation, ...] = field(default=(), converter=_to_tuple)
    fetches: tuple[ExternalDependency, ...] = field(default=(), converter=_to_tuple)
    outputs: tuple[str, ...] = field(default=(), converter=_to_tuple)
    workdir: str = ""

    @property
    def base_is_stage(self) -> bool:
        return self.base != SCRATCH_BASE and not self.base.startswith(IMAGE_PREFIX)

    @property
    def dependencies(self) -> tuple[str, ...]:
        """Stage names this stage needs, base first, then copy sources in order."""
        deps: list[str] = []
        if self.base_is_stage:
            deps.append(self.base)
        for copy in self.copies:
            if not copy.is_local and copy.source not in deps:
                deps.append(copy.source)
        return tuple(deps)


@define(frozen=True, slots=True)
class FileEntry:
    kind: str = "file"
    data: bytes = b""
    mode: int = 0o644
    target: str = ""

    @property
    def is_dir(self) -> bool:
        return self.kind == "dir"

    @property
    def is_symlink(self) -> bool:
        return self.kind == "symlink"

    @property
    def is_executable(self) -> bool:
        return bool(self.mode & 0o111)


@define(frozen=True, slots=True)
class Artifact:
    """An immutable output tree captured at `path` inside a finished stage."""

    stage_id: str
    path: str
    entries: tuple[tuple[str, FileEntry], ...]
    digest: str

    @property
    def size(self) -> int:
        return sum(len(entry.data) for _, entry in self.entries)


@define(frozen=True, slots=True)
class PackageManifest:
    package: str | None = None
    version: str | None = None
    architecture: str | None = None
    maintainer: str | None = None
    description: str | None = None
    extra_fields: tuple[tuple[str, str], ...] = field(default=(), converter=_to_pairs)

    @classmethod
    def from_control(cls, text: str) -> "PackageManifest":
        fields = parse_control(text)
        known = {name.lower(): fields.pop(name) for name in REQUIRED_CONTROL_FIELDS if name in fields}
        return cls(extra_fields=fields, **known)

    def fields(self) -> dict[str, str]:
        """Returns control fields in canonical order, dropping unset values."""
        values = {
            "Package": self.package,
            "Version": self.version,
            "Architecture": self.architecture,
            "Maintainer": self.maintainer,
            "Description": self.description,
        }
        result = {k: v for k, v in values.items() if v}
        result.update(dict(self.extra_fields))
        return result

    def merged_over(self, other: "PackageManifest") -> "PackageManifest":
        """Returns a manifest where our set values win over `other`'s."""
        extra = dict(other.extra_fields)
        extra.update(dict(self.extra_fields))
        return PackageManifest(
            package=self.package or other.package,
            version=self.version or other.version,
            architecture=self.architecture or other.architecture,
            maintainer=self.maintainer or other.maintainer,
            description=self.description or other.description,
            extra_fields=extra,
        )


def parse_control(text: str) -> dict[str, str]:
    """Parses a Debian control paragraph, keeping continuation lines."""
    fields: dict[str, str] = {}
    current: str | None = None
    for line in text.splitlines():
        if not line.strip():
            if fields:
                break
            continue
        if line[0] in " \t":
            if current is None:
                raise ValueError(f"Continuation line without a field: {line!r}")
            fields[current] += "\n" + line
            continue
        name, sep, value = line.partition(":")
        if not sep:
            raise ValueError(f"Malformed control line: {line!r}")
        current = name.strip()
        fields[current] = value.strip()
    return fields


def render_control(fields: Mapping[str, str]) -> str:
    return "".join(f"{name}: {value}\n" for name, value in fields.items())
