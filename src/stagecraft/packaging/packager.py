"""Assembles a finished staging root into a reproducible Debian binary package."""

import os
from pathlib import Path
import tempfile

from pyvider.telemetry import logger

from ..crypto import md5_hex
from ..exceptions import EmptyStagingRootError, MissingManifestFieldError, PackagingError
from ..models import REQUIRED_CONTROL_FIELDS, PackageManifest, render_control
from ..view import FilesystemView
from .archive import DEB_FORMAT_VERSION, ArMember, build_tar_gz, write_ar

CONTROL_DIR = "DEBIAN"
CONTROL_FILE = f"{CONTROL_DIR}/control"


class Packager:
    def __init__(self, source_date_epoch: int = 0) -> None:
        self.source_date_epoch = source_date_epoch

    def assemble(
        self,
        staging_root: Path,
        manifest: PackageManifest | None,
        output_path: Path,
    ) -> Path:
        """
        Validates `staging_root` and writes the package to `output_path`.

        If `output_path` is a directory (or has no suffix) the conventional
        `<package>_<version>_<arch>.deb` name is used inside it. Nothing is
        written unless validation passes, and the final file only appears
        once it is complete.
        """
        staging_root = Path(staging_root)
        if not staging_root.is_dir() or not any(staging_root.iterdir()):
            raise EmptyStagingRootError(str(staging_root))

        tree = FilesystemView.capture(staging_root)
        control_entry = tree.get(CONTROL_FILE)
        if control_entry is None or control_entry.kind != "file":
            raise MissingManifestFieldError(CONTROL_FILE)

        try:
            from_control = PackageManifest.from_control(control_entry.data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise PackagingError(f"Unreadable {CONTROL_FILE}: {e}") from e
        final = manifest.merged_over(from_control) if manifest else from_control
        fields = final.fields()
        for name in REQUIRED_CONTROL_FIELDS:
            if not fields.get(name, "").strip():
                raise MissingManifestFieldError(name)

        control_entries = [
            (rel, entry) for rel, entry in tree.subtree(CONTROL_DIR) if rel and rel != "control"
        ]
        data_entries = [
            (path, entry)
            for path, entry in tree
            if path != CONTROL_DIR and not path.startswith(CONTROL_DIR + "/")
        ]
        if not any(not entry.is_dir for _, entry in data_entries):
            raise EmptyStagingRootError(str(staging_root))

        md5sums = "".join(
            f"{md5_hex(entry.data)}  {path}\n"
            for path, entry in data_entries
            if entry.kind == "file"
        )
        control_view = FilesystemView(dict(control_entries))
        control_view.add_file("control", render_control(fields).encode("utf-8"))
        control_view.add_file("md5sums", md5sums.encode("utf-8"))

        mtime = self.source_date_epoch
        archive = write_ar(
            [
                ArMember("debian-binary", DEB_FORMAT_VERSION, mtime),
                ArMember("control.tar.gz", build_tar_gz(control_view, mtime), mtime),
                ArMember("data.tar.gz", build_tar_gz(data_entries, mtime), mtime),
            ]
        )

        output_path = Path(output_path)
        if output_path.is_dir() or not output_path.suffix:
            output_path = output_path / (
                f"{fields['Package']}_{fields['Version']}_{fields['Architecture']}.deb"
            )
        output_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_atomically(output_path, archive)
        logger.info(
            f"Package written: {output_path}",
            package=fields["Package"],
            version=fields["Version"],
            size=len(archive),
        )
        return output_path

    @staticmethod
    def _write_atomically(path: Path, data: bytes) -> None:
        fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".part")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(temp_name, path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise
