"""Error taxonomy for Nest devkit operations."""

from __future__ import annotations

from typing import Iterable, List, Optional

RESET_HINT = (
    "Ensure docker is installed and is accessible from this environment\n"
    "Run 'nest reset' if the docker containers are not running"
)


class NestError(RuntimeError):
    """Base class for every failure raised by nest_devkit."""


class TopologyNotFound(NestError):
    pass


class TopologyError(NestError):
    pass


class SettingsNotFound(NestError):
    pass


class SettingsError(NestError):
    pass


class SaveSettingsFailed(NestError):
    pass


class NotAProject(NestError):
    pass


class ServiceNotConfigured(NestError):
    pass


class PermissionDenied(NestError):
    """The access keys were rotated; the devkit must be re-issued."""

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(
            message
            or "Permission denied. The access keys have changed. "
            "Please request a DevKit with the new keys."
        )


class RemoteCommandFailed(NestError):
    def __init__(self, exit_code: int, output: str = "", message: Optional[str] = None) -> None:
        self.exit_code = exit_code
        self.output = output
        super().__init__(message or f"Command exited with code {exit_code}.\n{RESET_HINT}")


class CommandNotFound(NestError):
    pass


class CommandTimeout(NestError):
    def __init__(self, args: List[str], timeout: float) -> None:
        self.command = list(args)
        self.timeout = timeout
        super().__init__(f"'{' '.join(args)}' did not finish within {timeout:g}s")


class PipelineCancelled(NestError):
    pass


class PortResolutionFailed(NestError):
    pass


class ArtifactWriteFailed(NestError):
    pass


class ProjectFileError(ArtifactWriteFailed):
    pass


class GitIntegrationFailed(NestError):
    pass


class ScaffoldExists(NestError):
    pass


class GitVersionTooOld(NestError):
    pass


class StageFailed(NestError):
    """A pipeline stage failed; carries the service identity and the stage."""

    def __init__(
        self, key: str, stage: "object", cause: BaseException, result: "object" = None
    ) -> None:
        self.key = key
        self.stage = stage
        self.cause = cause
        self.result = result
        stage_name = getattr(stage, "value", stage)
        super().__init__(f"{key}: {stage_name} failed [{cause}]")


class BatchFailed(NestError):
    def __init__(
        self, failed: Iterable[str], operation: str = "operation", batch: "object" = None
    ) -> None:
        self.failed = list(failed)
        self.batch = batch
        super().__init__(
            f"The {operation} failed for: {', '.join(self.failed) or 'unknown'}"
        )


class ScaffoldFailed(BatchFailed):
    def __init__(self, failed: Iterable[str], batch: "object" = None) -> None:
        super().__init__(failed, operation="scaffolding", batch=batch)


class ResetFailed(BatchFailed):
    def __init__(self, failed: Iterable[str], batch: "object" = None) -> None:
        super().__init__(failed, operation="reset", batch=batch)
