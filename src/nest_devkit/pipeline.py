"""Orchestration of the per-service pipelines and the top-level operations.

Each app or worker runs a provisioning pipeline (attach, pull, restore,
build, build tests, materialize); each infrastructure service runs a
discovery pipeline that only resolves its view port. Pipelines of a batch
run concurrently and the batch always waits for every one of them to
settle before reporting.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
import shutil
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple, Union

from .config import APP_HTTP_PORT, WORKER_SSH_PORT, NestConfig
from .errors import (
    GitVersionTooOld,
    NestError,
    PipelineCancelled,
    RemoteCommandFailed,
    ResetFailed,
    ScaffoldExists,
    ScaffoldFailed,
    ServiceNotConfigured,
    StageFailed,
    TopologyNotFound,
)
from .executor import CommandRunner, RemoteExecutor
from .materialize import (
    ProjectMaterializer,
    project_folder,
    setup_git,
    shared_folder,
    source_folder,
)
from .ports import PortResolver
from .progress import NullProgress, ProgressSink
from .settings import SettingsStore, require_project
from .topology import (
    APP_TAG,
    DOCKER_MACHINE_IP,
    HTTP_PORT,
    SERVICE_VIEW_PORT,
    SERVICES_PASSWORD,
    SSH_PORT,
    TAG,
    NestSettings,
    Role,
    ServiceDescriptor,
    discover_settings,
    find_devkit,
)

logger = logging.getLogger(__name__)

MIN_GIT_VERSION = (2, 10)
VIEW_KINDS = ("storage", "batch", "build")

PULL_NOTICE = (
    "The pull command will download this project source code along with the shared",
    "source from the remote machine. All local project and shared source content will",
    "be replaced.",
)
PUSH_NOTICE = (
    "This command will upload the project along with the shared source.",
    "The content pushed to the remote can be observed by opening a",
    "SSH terminal.",
)
DEPLOY_NOTICE = (
    "This command will restore, release build and restart the",
    "dependent services on the remote server.",
)
DATA_DOWN_NOTICE = (
    "The local database will be replaced with the production data.",
)

Confirm = Callable[[str], Union[bool, Awaitable[bool]]]


class Stage(str, Enum):
    IDLE = "idle"
    ATTACHING = "attaching"
    PULLING = "pulling"
    RESTORING = "restoring"
    BUILDING = "building"
    TEST_BUILDING = "test-building"
    MATERIALIZING = "materializing"
    RESOLVING_PORT = "resolving-port"
    DONE = "done"
    FAILED = "failed"


StageStep = Tuple[Stage, Callable[[], Awaitable[Any]]]


@dataclass
class OperationResult:
    """Outcome of one service pipeline.

    ``stage`` is the last stage entered, so on failure it names the stage
    that failed.
    """

    subject: ServiceDescriptor
    success: bool = False
    stage: Stage = Stage.IDLE
    error: Optional[BaseException] = None

    @property
    def state(self) -> Stage:
        if self.success:
            return Stage.DONE
        if self.error is not None:
            return Stage.FAILED
        return self.stage


@dataclass
class BatchResult:
    results: List[OperationResult] = field(default_factory=list)

    @property
    def failed(self) -> List[str]:
        return [r.subject.key for r in self.results if not r.success]

    @property
    def succeeded(self) -> bool:
        return not self.failed

    @property
    def state(self) -> Stage:
        return Stage.DONE if self.succeeded else Stage.FAILED


async def run_stages(
    subject: ServiceDescriptor,
    steps: Sequence[StageStep],
    progress: ProgressSink,
    cancel: Optional[asyncio.Event] = None,
) -> OperationResult:
    """Run ``steps`` in order and stop at the first failure.

    A failure is re-raised as :class:`StageFailed` carrying the partial
    result. Exactly one terminal line (done or failed) is emitted.
    """
    result = OperationResult(subject)
    try:
        for stage, step in steps:
            if cancel is not None and cancel.is_set():
                raise PipelineCancelled(f"{subject.key} was cancelled")
            result.stage = stage
            logger.debug("%s -> %s", subject.key, stage.value)
            await step()
    except asyncio.CancelledError:
        progress.fail(f"{subject.key} cancelled while {result.stage.value}")
        raise
    except Exception as exc:
        result.error = exc
        progress.fail(f"{subject.key} failed while {result.stage.value} [{exc}]")
        raise StageFailed(subject.key, result.stage, exc, result=result) from exc

    result.success = True
    progress.step(f"{subject.key} done.")
    return result


async def fan_out(
    pipelines: Sequence[Tuple[ServiceDescriptor, Awaitable[OperationResult]]],
) -> BatchResult:
    """Run every pipeline concurrently and wait for all of them to settle."""
    outcomes = await asyncio.gather(
        *(pipeline for _, pipeline in pipelines), return_exceptions=True
    )

    batch = BatchResult()
    for (subject, _), outcome in zip(pipelines, outcomes):
        if isinstance(outcome, OperationResult):
            batch.results.append(outcome)
        elif isinstance(outcome, StageFailed) and isinstance(outcome.result, OperationResult):
            batch.results.append(outcome.result)
        else:
            logger.error("%s pipeline raised %r", subject.key, outcome)
            batch.results.append(OperationResult(subject, error=outcome))
    return batch


def parse_git_version(output: str) -> Tuple[int, ...]:
    match = re.search(r"(\d+)\.(\d+)", output or "")
    if not match:
        raise GitVersionTooOld(f"Could not read the git version from {output!r}")
    return int(match.group(1)), int(match.group(2))


def list_projects(settings: NestSettings) -> List[str]:
    """Folders a developer can open: the shared source and every project."""
    return ["shared"] + [
        key for key in settings.names if settings.by_key[key].env(TAG)
    ]


def project_target(root: Path, settings: NestSettings, key: str) -> Path:
    if key == "shared":
        return shared_folder(root)
    service = settings.get(key)
    if service is None or not service.env(TAG):
        raise ServiceNotConfigured(f"No project named {key} in this nest")
    return project_folder(root, service)


def view_url(settings: NestSettings, kind: str) -> Tuple[str, str]:
    """Browser URL of an infrastructure service and its login hint."""
    if kind not in VIEW_KINDS:
        raise ServiceNotConfigured(f"{kind} services have no view")
    service = settings.service(kind)
    if service is None:
        raise ServiceNotConfigured(f"A {kind} service has not been configured for this app.")
    url = f"http://{service.env(DOCKER_MACHINE_IP)}:{service.env(SERVICE_VIEW_PORT)}"
    login = (
        f"login username - {service.env(APP_TAG)}, "
        f"password - {service.env(SERVICES_PASSWORD)}"
    )
    return url, login


class Orchestrator:
    """Runs devkit operations for one workspace root.

    The collaborators are built from ``config`` and ``runner`` so tests
    can swap the subprocess layer for a fake.
    """

    def __init__(
        self,
        root: Path,
        config: Optional[NestConfig] = None,
        runner: Optional[CommandRunner] = None,
        progress: Optional[ProgressSink] = None,
        confirm: Optional[Confirm] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> None:
        self.root = Path(root)
        self.config = config or NestConfig()
        self.runner = runner or CommandRunner()
        self.progress = progress or NullProgress()
        self.confirm = confirm
        self.cancel_event = cancel
        self.executor = RemoteExecutor(self.runner, self.config)
        self.resolver = PortResolver(self.runner, self.config)
        self.materializer = ProjectMaterializer(self.runner, self.config)
        self.store = SettingsStore(self.root)

    def request_cancel(self) -> None:
        if self.cancel_event is not None:
            self.cancel_event.set()

    # =========================================================================
    # Pipelines
    # =========================================================================

    def _remote(self, service: ServiceDescriptor, *tokens: str) -> Callable[[], Awaitable[Any]]:
        return partial(self.executor.run, service, list(tokens), self.progress, self.cancel_event)

    async def configure_project(self, service: ServiceDescriptor) -> ServiceDescriptor:
        """Resolve the debug ports of a checkout and write its artifacts.

        Every project exposes ssh for the remote debugger; apps also publish
        their HTTP endpoint.
        """
        await self.resolver.resolve_port(service, WORKER_SSH_PORT, SSH_PORT, self.cancel_event)
        if service.role is Role.APP:
            await self.resolver.resolve_port(service, APP_HTTP_PORT, HTTP_PORT, self.cancel_event)
        return await self.materializer.materialize(service, self.progress, self.cancel_event)

    async def _resolve_view_port(self, service: ServiceDescriptor) -> ServiceDescriptor:
        port = self.resolver.view_port_for(service)
        return await self.resolver.resolve_port(
            service, port, SERVICE_VIEW_PORT, self.cancel_event
        )

    async def provision(
        self, service: ServiceDescriptor, host_ip: str, full: bool = True
    ) -> OperationResult:
        """Provisioning pipeline of an app or worker.

        ``full=False`` is the rebuild used by reset, which skips the pull and
        restore because the source is already on disk.
        """
        service.environment[DOCKER_MACHINE_IP] = host_ip
        steps: List[StageStep] = [(Stage.ATTACHING, self._remote(service, "app", "attach"))]
        if full:
            steps += [
                (Stage.PULLING, self._remote(service, "deployment", "pull")),
                (Stage.RESTORING, self._remote(service, "deployment", "restore")),
            ]
        steps += [
            (Stage.BUILDING, self._remote(service, "deployment", "build")),
            (Stage.TEST_BUILDING, self._remote(service, "deployment", "clean_build_tests")),
            (Stage.MATERIALIZING, partial(self.configure_project, service)),
        ]
        self.progress.step(f"Attaching {service.container_name}, this may take a minute or two ...")
        return await run_stages(service, steps, self.progress, self.cancel_event)

    async def discover(self, service: ServiceDescriptor, host_ip: str) -> OperationResult:
        """Discovery pipeline of an infrastructure service."""
        service.environment[DOCKER_MACHINE_IP] = host_ip
        steps: List[StageStep] = [
            (Stage.RESOLVING_PORT, partial(self._resolve_view_port, service))
        ]
        return await run_stages(service, steps, self.progress, self.cancel_event)

    def pipelines(
        self, settings: NestSettings, host_ip: str, full: bool = True
    ) -> List[Tuple[ServiceDescriptor, Awaitable[OperationResult]]]:
        launched = []
        for service in settings.ordered():
            if service.is_project:
                launched.append((service, self.provision(service, host_ip, full)))
            elif service.service_kind:
                launched.append((service, self.discover(service, host_ip)))
        return launched

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _confirm(self, prompt: str) -> bool:
        if self.confirm is None:
            return True
        answer = self.confirm(prompt)
        if inspect.isawaitable(answer):
            answer = await answer
        return bool(answer)

    async def _ask(self, prompt: str, notice: Sequence[str] = ()) -> bool:
        if notice:
            self.progress.step("*" * 67)
            for line in notice:
                self.progress.step(line)
            self.progress.step("*" * 68)
            self.progress.step("Confirm above you want to proceed.")
        if await self._confirm(prompt):
            return True
        self.progress.step("Cancelled.")
        self.progress.end()
        return False

    def _devkit(self) -> Path:
        devkit = find_devkit(self.root)
        if devkit is None:
            raise TopologyNotFound(f"Failed to find a devkit in {self.root}")
        return devkit

    async def _compose(self, *args: str, check: bool = True) -> bool:
        command = [self.config.docker_compose, "--file", str(self._devkit()), *args]

        def _on_line(line: str) -> None:
            if line.strip():
                self.progress.step(line)

        result = await self.runner.run(
            command,
            cwd=self.root,
            on_line=_on_line,
            timeout=self.config.command_timeout,
            cancel=self.cancel_event,
        )
        if not result.ok:
            if check:
                raise RemoteCommandFailed(result.returncode, result.output)
            self.progress.fail(f"docker-compose {' '.join(args)} exited with {result.returncode}")
        return result.ok

    async def check_git(self) -> Tuple[int, ...]:
        result = await self.runner.run(
            [self.config.git, "--version"], timeout=self.config.command_timeout
        )
        if not result.ok:
            raise GitVersionTooOld("Failed to check if Git is installed")
        version = parse_git_version(result.output)
        if version < MIN_GIT_VERSION:
            raise GitVersionTooOld(
                "Please install Git version {}.{} or greater".format(*MIN_GIT_VERSION)
            )
        return version

    def load_settings(self) -> NestSettings:
        return self.store.load()

    # =========================================================================
    # Whole nest operations
    # =========================================================================

    async def scaffold_up(self) -> BatchResult:
        """Bring the nest up and provision every service in it."""
        self.progress.start("scaffold up")
        try:
            await self.check_git()
            if source_folder(self.root).exists():
                raise ScaffoldExists(
                    "A scaffold already exist. Down the scaffold before proceeding."
                )
            settings = discover_settings(self.root, self.progress)
            host_ip = await self.resolver.resolve_host_ip(self.progress)

            self.progress.step("Composing docker containers ...")
            await self._compose("up", "-d")

            batch = await fan_out(self.pipelines(settings, host_ip, full=True))
            if not batch.succeeded:
                for key in batch.failed:
                    self.progress.fail(f"The scaffolding of {key} failed")
                raise ScaffoldFailed(batch.failed, batch)

            self.progress.step("Setting up git ...")
            setup_git(self.root, settings, self.progress)
            path = self.store.save(settings)
            self.progress.step(f"Settings saved -> {path}")
        except NestError as exc:
            self.progress.fail(str(exc))
            raise
        self.progress.end()
        return batch

    async def scaffold_down(self) -> List[Path]:
        """Stop the containers and remove everything but the devkit."""
        self.progress.start("scaffold down")
        if not await self._ask("Remove all local assets of this project?"):
            return []

        devkit = self._devkit()
        self.progress.step("Working, this may take a while ...")
        await self._compose("down", check=False)

        removed: List[Path] = []
        for entry in sorted(self.root.iterdir()):
            if entry == devkit:
                continue
            try:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
            except OSError as exc:
                self.progress.fail(f"Failed to remove {entry} [{exc}]")
                continue
            removed.append(entry)
            self.progress.step(f"Removed {entry}")

        self.progress.end()
        return removed

    async def reset(self) -> BatchResult:
        """Restart the containers and rebuild every checkout."""
        self.progress.start("reset")
        try:
            settings = self.store.load()
            host_ip = await self.resolver.resolve_host_ip(self.progress)

            self.progress.step("Re-starting docker containers ...")
            await self._compose("down")
            await self._compose("up", "-d")

            batch = await fan_out(self.pipelines(settings, host_ip, full=False))
            if not batch.succeeded:
                for key in batch.failed:
                    self.progress.fail(f"The reset of {key} failed")
                raise ResetFailed(batch.failed, batch)

            path = self.store.save(settings)
            self.progress.step(f"Settings saved -> {path}")
        except NestError as exc:
            self.progress.fail(str(exc))
            raise
        self.progress.end()
        return batch

    # =========================================================================
    # Single project operations
    # =========================================================================

    async def _project_command(
        self,
        subject: str,
        folder: Path,
        tokens: Sequence[str],
        prompt: Optional[str] = None,
        notice: Sequence[str] = (),
        after: Optional[Callable[[ServiceDescriptor], Awaitable[Any]]] = None,
        requires: Optional[Callable[[], Any]] = None,
    ) -> Optional[ServiceDescriptor]:
        self.progress.start(subject)
        try:
            project = require_project(folder)
            if requires is not None:
                requires()
            if prompt is not None and not await self._ask(prompt, notice):
                return None
            await self.executor.run(project, tokens, self.progress, self.cancel_event)
            if after is not None:
                await after(project)
        except NestError as exc:
            self.progress.fail(str(exc))
            raise
        self.progress.end()
        return project

    async def refresh_project(self, project: ServiceDescriptor) -> ServiceDescriptor:
        self.progress.step("Refreshing the nest assets ...")
        return await self.configure_project(project)

    async def pull(self, folder: Path) -> Optional[ServiceDescriptor]:
        return await self._project_command(
            "pull content",
            folder,
            ["deployment", "pull"],
            prompt="Replace local content from production?",
            notice=PULL_NOTICE,
            after=self.refresh_project,
        )

    async def push(self, folder: Path) -> Optional[ServiceDescriptor]:
        return await self._project_command(
            "push content",
            folder,
            ["deployment", "push"],
            prompt="Ready to push the code?",
            notice=PUSH_NOTICE,
        )

    async def deploy(self, folder: Path) -> Optional[ServiceDescriptor]:
        return await self._project_command(
            "deploy",
            folder,
            ["deployment", "deploy"],
            prompt="Ready to deploy?",
            notice=DEPLOY_NOTICE,
        )

    async def restore(self, folder: Path) -> Optional[ServiceDescriptor]:
        return await self._project_command("restore", folder, ["deployment", "restore"])

    async def build(self, folder: Path) -> Optional[ServiceDescriptor]:
        async def _kick(project: ServiceDescriptor) -> None:
            await self._send_kick(
                self.store.load(), self.config.ci_url, f"project {project.tag_cap} was built"
            )

        return await self._project_command(
            "building", folder, ["deployment", "build"], after=_kick, requires=self.store.load
        )

    async def clean(self, folder: Path) -> Optional[ServiceDescriptor]:
        return await self._project_command("cleaning", folder, ["deployment", "clean"])

    async def clear(self, folder: Path) -> Optional[ServiceDescriptor]:
        return await self._project_command("clearing", folder, ["deployment", "clear"])

    async def kill(self, folder: Path) -> Optional[ServiceDescriptor]:
        return await self._project_command("kill", folder, ["nests", "kill"])

    async def unit_test_build(self, folder: Path) -> Optional[ServiceDescriptor]:
        return await self._project_command(
            "unit test build", folder, ["deployment", "clean_build_tests"]
        )

    def _require_storage(self) -> ServiceDescriptor:
        storage = self.store.load().service("storage")
        if storage is None:
            raise ServiceNotConfigured(
                "A storage service has not been configured for this app."
            )
        return storage

    async def data_up(self, folder: Path) -> Optional[ServiceDescriptor]:
        """Upload the local database of the project to production."""
        return await self._project_command(
            "data up", folder, ["data", "push"], requires=self._require_storage
        )

    async def data_down(self, folder: Path) -> Optional[ServiceDescriptor]:
        """Replace the local database of the project with production data."""
        return await self._project_command(
            "data down",
            folder,
            ["data", "pull"],
            prompt="Replace local Database from production?",
            notice=DATA_DOWN_NOTICE,
            requires=self._require_storage,
        )

    async def unit_test_debug_host(self, folder: Path) -> str:
        """Process id the IDE attaches to when debugging unit tests."""
        project = require_project(folder)
        output = await self.executor.query(
            project, ["deployment", "unit_test_debug_host"], self.cancel_event
        )
        pid = output.strip().splitlines()[-1].strip() if output.strip() else ""
        if not pid.isdigit():
            raise RemoteCommandFailed(
                0, output, "No unit test host is running, run unit test clean build first"
            )
        return pid

    # =========================================================================
    # Continuous integration
    # =========================================================================

    async def _send_kick(self, settings: NestSettings, url: str, cause: str) -> None:
        build = settings.service("build")
        if build is None:
            raise ServiceNotConfigured("A build service has not been configured for this app.")
        await self.executor.curl(build, url, self.progress, self.cancel_event)
        self.progress.step(f"kicked off a new session -> {cause}")

    async def kick_ci(self, cause: str = "on request") -> None:
        self.progress.start("kicking off a ci session")
        try:
            await self._send_kick(self.store.load(), self.config.ci_url, cause)
        except NestError as exc:
            self.progress.fail(str(exc))
            raise
        self.progress.end()

    async def kick_cd(self, cause: str = "on request") -> None:
        self.progress.start("kicking off a cd session")
        try:
            await self._send_kick(self.store.load(), self.config.cd_url, cause)
        except NestError as exc:
            self.progress.fail(str(exc))
            raise
        self.progress.end()
