"""Content-addressed holder of the artifacts produced during one build run."""

from collections.abc import Iterable, Mapping
import threading

from pyvider.telemetry import logger

from .crypto import tree_digest
from .exceptions import ArtifactNotFoundError, DuplicateArtifactError
from .models import Artifact, FileEntry, normalize_path


def make_artifact(
    stage_id: str, path: str, entries: Iterable[tuple[str, FileEntry]]
) -> Artifact:
    frozen = tuple(sorted(entries, key=lambda item: item[0]))
    return Artifact(
        stage_id=stage_id,
        path=normalize_path(path),
        entries=frozen,
        digest=tree_digest(frozen),
    )


class ArtifactStore:
    """
    Keyed by (stage id, path); blobs are shared by content digest.

    Each stage id is written by exactly one stage execution. Once sealed
    (`publish`), a stage's artifacts are readable from any thread without
    locking, and any further write for that stage id is rejected.
    """

    def __init__(self) -> None:
        self._blobs: dict[str, Artifact] = {}
        self._index: dict[tuple[str, str], str] = {}
        self._sealed: set[str] = set()
        self._write_lock = threading.Lock()

    def put(self, stage_id: str, path: str, blob: Artifact) -> None:
        with self._write_lock:
            self._put_locked(stage_id, path, blob)

    def _put_locked(self, stage_id: str, path: str, blob: Artifact) -> None:
        key = (stage_id, normalize_path(path))
        if stage_id in self._sealed or key in self._index:
            raise DuplicateArtifactError(stage_id, key[1])
        self._blobs.setdefault(blob.digest, blob)
        self._index[key] = blob.digest

    def publish(self, stage_id: str, artifacts: Mapping[str, Artifact]) -> None:
        """Stores all outputs of a finished stage and seals its stage id."""
        with self._write_lock:
            if stage_id in self._sealed:
                raise DuplicateArtifactError(stage_id)
            for path in artifacts:
                if (stage_id, normalize_path(path)) in self._index:
                    raise DuplicateArtifactError(stage_id, normalize_path(path))
            for path, blob in artifacts.items():
                self._put_locked(stage_id, path, blob)
            self._sealed.add(stage_id)
        logger.debug(
            "Artifacts published",
            stage=stage_id,
            paths=sorted(artifacts),
        )

    def has(self, stage_id: str) -> bool:
        return stage_id in self._sealed

    def get(self, stage_id: str, path: str) -> Artifact:
        if stage_id not in self._sealed:
            raise ArtifactNotFoundError(stage_id, path, "stage has not completed")
        digest = self._index.get((stage_id, normalize_path(path)))
        if digest is None:
            raise ArtifactNotFoundError(stage_id, path, "not a declared output")
        return self._blobs[digest]

    def paths(self, stage_id: str) -> list[str]:
        return sorted(p for sid, p in self._index if sid == stage_id)

    def stages(self) -> list[str]:
        return sorted(self._sealed)

    def find_containing(self, stage_id: str, path: str) -> tuple[Artifact, str]:
        """
        Locates the declared output of `stage_id` that holds `path`.

        Returns the artifact and the sub-path of `path` inside it.
        """
        if stage_id not in self._sealed:
            raise ArtifactNotFoundError(stage_id, path, "stage has not completed")
        key = normalize_path(path)
        candidates = sorted(self.paths(stage_id), key=len, reverse=True)
        for output in candidates:
            if output == "" or key == output or key.startswith(output + "/"):
                rel = key[len(output):].lstrip("/") if output else key
                return self.get(stage_id, output), rel
        raise ArtifactNotFoundError(stage_id, path, "not under a declared output")

    def blob_count(self) -> int:
        return len(self._blobs)
