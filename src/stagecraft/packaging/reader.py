"""Python-based reader for the Debian packages stagecraft produces."""

import gzip
import io
from pathlib import Path
import tarfile

from ..exceptions import InvalidArchiveError
from ..models import parse_control
from .archive import DEB_FORMAT_VERSION, ArMember, read_ar


class DebReader:
    """Reads the members, control fields and file list of a .deb archive."""

    def __init__(self, package_path: Path) -> None:
        if not package_path.is_file():
            raise FileNotFoundError(f"Package not found at: {package_path}")
        self.package_path = package_path
        self.members = self._read_members()

    def _read_members(self) -> dict[str, ArMember]:
        try:
            members = read_ar(self.package_path.read_bytes())
        except ValueError as e:
            raise InvalidArchiveError(f"Archive validation failed: {e}") from e

        names = [m.name for m in members]
        if names[:1] != ["debian-binary"] or members[0].data != DEB_FORMAT_VERSION:
            raise InvalidArchiveError(f"Not a Debian binary package (members: {names}).")
        for required in ("control.tar.gz", "data.tar.gz"):
            if required not in names:
                raise InvalidArchiveError(f"Missing archive member '{required}'.")
        return {m.name: m for m in members}

    def _open_tar(self, member: str) -> tarfile.TarFile:
        raw = gzip.decompress(self.members[member].data)
        return tarfile.open(fileobj=io.BytesIO(raw), mode="r:")

    def control_fields(self) -> dict[str, str]:
        with self._open_tar("control.tar.gz") as tar:
            extracted = tar.extractfile("./control")
            if extracted is None:
                raise InvalidArchiveError("control.tar.gz has no control file.")
            return parse_control(extracted.read().decode("utf-8"))

    def data_files(self) -> list[str]:
        with self._open_tar("data.tar.gz") as tar:
            return [
                info.name.removeprefix("./")
                for info in tar.getmembers()
                if not info.isdir()
            ]

    def read_data_file(self, path: str) -> bytes:
        with self._open_tar("data.tar.gz") as tar:
            extracted = tar.extractfile(f"./{path.lstrip('/')}")
            if extracted is None:
                raise InvalidArchiveError(f"'{path}' is not a regular file in data.tar.gz.")
            return extracted.read()

    def get_info(self) -> str:
        """Returns a human-readable string of the package information."""
        fields = self.control_fields()
        files = self.data_files()
        return (
            f"Debian Package Information (parsed by Python):\n"
            f"  Package: {fields.get('Package', '?')}\n"
            f"  Version: {fields.get('Version', '?')}\n"
            f"  Architecture: {fields.get('Architecture', '?')}\n"
            f"  Maintainer: {fields.get('Maintainer', '?')}\n"
            f"  Members: {', '.join(self.members)}\n"
            f"  Installed files: {len(files)}\n"
            + "".join(f"    {name}\n" for name in files)
        ).rstrip("\n")
