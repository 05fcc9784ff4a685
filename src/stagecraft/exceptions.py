class BuildError(Exception):
    """Base class for every failure a build run can report."""

    def __init__(self, message: str, *, stage_id: str | None = None) -> None:
        super().__init__(message)
        self.stage_id = stage_id

    def __str__(self) -> str:
        message = super().__str__()
        if self.stage_id is not None and f"'{self.stage_id}'" not in message:
            return f"[stage '{self.stage_id}'] {message}"
        return message


# Structural errors: detected before anything executes.


class StructuralError(BuildError):
    pass


class DuplicateStageError(StructuralError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Stage '{name}' is already declared.")
        self.name = name


class UnknownBaseError(StructuralError):
    def __init__(self, name: str, reference: str, relation: str = "base") -> None:
        super().__init__(
            f"Stage '{name}' references undeclared stage '{reference}' ({relation})."
        )
        self.name = name
        self.reference = reference
        self.relation = relation


class CycleDetectedError(StructuralError):
    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")
        self.cycle = cycle


class UnknownStageError(StructuralError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Stage '{name}' is not declared in the build graph.")
        self.name = name


class UnresolvedBuildArgError(StructuralError):
    def __init__(self, stage_id: str, arg_name: str) -> None:
        super().__init__(
            f"Build argument '{arg_name}' has no override, default or inherited value.",
            stage_id=stage_id,
        )
        self.arg_name = arg_name


class BuildFileError(StructuralError):
    pass


# Execution errors: fatal to the run, completed artifacts stay inspectable.


class StageExecutionError(BuildError):
    pass


class StageCommandError(StageExecutionError):
    def __init__(
        self,
        stage_id: str,
        command_index: int,
        exit_status: int | None,
        command: str = "",
        stderr: str = "",
    ) -> None:
        status = "timed out" if exit_status is None else f"exit status {exit_status}"
        super().__init__(
            f"Command #{command_index} {status}: {command}", stage_id=stage_id
        )
        self.command_index = command_index
        self.exit_status = exit_status
        self.command = command
        self.stderr = stderr


class ArtifactNotFoundError(StageExecutionError):
    def __init__(self, stage_id: str, path: str, reason: str = "") -> None:
        detail = f" ({reason})" if reason else ""
        super().__init__(
            f"No artifact '{path}' for stage '{stage_id}'{detail}.", stage_id=stage_id
        )
        self.path = path


class MissingOutputError(ArtifactNotFoundError):
    pass


class DuplicateArtifactError(StageExecutionError):
    def __init__(self, stage_id: str, path: str | None = None) -> None:
        target = f"artifact '{path}'" if path else "artifacts"
        super().__init__(
            f"Stage '{stage_id}' already published {target} in this run.",
            stage_id=stage_id,
        )
        self.path = path


class ContextPathError(StageExecutionError):
    pass


# Fetch errors.


class FetchError(BuildError):
    def __init__(self, message: str, url: str) -> None:
        super().__init__(message)
        self.url = url


class DigestMismatchError(FetchError):
    def __init__(self, url: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Digest mismatch for {url}: expected {expected}, got {actual}", url
        )
        self.expected = expected
        self.actual = actual


class NetworkError(FetchError):
    pass


class NotFoundError(FetchError):
    pass


# Packaging errors.


class PackagingError(BuildError):
    pass


class MissingManifestFieldError(PackagingError):
    def __init__(self, field: str) -> None:
        super().__init__(f"Required manifest field '{field}' is missing.")
        self.field = field


class EmptyStagingRootError(PackagingError):
    def __init__(self, path: str) -> None:
        super().__init__(f"Staging root has no installed files: {path}")
        self.path = path


class InvalidArchiveError(PackagingError):
    pass
