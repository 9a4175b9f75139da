"""Rendering of per-project IDE debug configuration and git integration."""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import os
import unicodedata
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Any, Dict, Optional

from jinja2 import Environment, FileSystemLoader

from .config import NestConfig
from .errors import ArtifactWriteFailed, GitIntegrationFailed, ProjectFileError
from .executor import CommandRunner
from .progress import ProgressSink
from .settings import save_project
from .topology import (
    APP_TAG,
    CONTACT_ID,
    CONTACT_KEY,
    DOCKER_MACHINE_IP,
    FOLDER_ROOT,
    HTTP_PORT,
    TREE_KEY,
    NestSettings,
    Role,
    ServiceDescriptor,
)

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"

SOURCE_DIR = "source"
SHARED_DIR = "shared"
SSH_CONFIG_FILE = ".ssh_config"
TREE_KEY_FILE = ".tree_key"
CONTACT_KEY_FILE = ".contact_key"

# Layout inside the containers
SHADOW_ROOT = "/var/app/source"
SHADOW_SHARED = f"{SHADOW_ROOT}/shared"
DEBUGGER_PATH = "/vsdbg/vsdbg"
WORKSPACE_FOLDER = "${workspaceFolder}"
UNIT_TEST_PROCESS = "${command:unitTestProcId}"

APP_ENVIRONMENT = {
    "ASPNETCORE_ENVIRONMENT": "Development",
    "ASPNETCORE_URLS": "http://*:5000",
}


def source_folder(root: Path) -> Path:
    return Path(root) / SOURCE_DIR


def shared_folder(root: Path) -> Path:
    return source_folder(root) / SHARED_DIR


def project_folder(root: Path, service: ServiceDescriptor) -> Path:
    return source_folder(root) / service.tag_cap


def strip_accents(text: str) -> str:
    """Drop accents and any other non-ASCII character."""
    normalized = unicodedata.normalize("NFKD", text)
    return normalized.encode("ascii", "ignore").decode("ascii")


def sanitize_environment(service: ServiceDescriptor) -> Dict[str, str]:
    """Coerce every environment value to an ASCII string, in place.

    The remote debugger transport mangles accented characters.
    """
    for key, value in list(service.environment.items()):
        service.environment[key] = strip_accents(str(value))
    return dict(service.environment)


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def read_target_framework(project_file: Path) -> str:
    """First target framework declared by an MSBuild project file."""
    try:
        tree = ET.parse(project_file)
    except OSError as exc:
        raise ProjectFileError(f"failed to read file {project_file}: {exc}") from exc
    except ET.ParseError as exc:
        raise ProjectFileError(f"Failed to parse {project_file}: {exc}") from exc

    for group in tree.getroot():
        if _local_name(group.tag) != "PropertyGroup":
            continue
        for element in group:
            name = _local_name(element.tag)
            text = (element.text or "").strip()
            if name == "TargetFramework" and text:
                return text
            if name == "TargetFrameworks" and text:
                return text.split(";")[0].strip()
    raise ProjectFileError(f"No TargetFramework declared in {project_file}")


def program_path(checkout: Path, tag_cap: str) -> str:
    framework = read_target_framework(checkout / "src" / f"{tag_cap}.csproj")
    return f"{SHADOW_ROOT}/{tag_cap}/src/bin/Debug/{framework}/{tag_cap}.dll"


def _host_path(sub: str) -> str:
    separator = "\\" if os.name == "nt" else "/"
    return f"{WORKSPACE_FOLDER}{separator}{sub}"


def _pipe_transport(container_name: str) -> Dict[str, Any]:
    return {
        "pipeProgram": "docker",
        "pipeCwd": WORKSPACE_FOLDER,
        "pipeArgs": [f"exec -i {container_name}"],
        "quoteArgs": False,
        "debuggerPath": DEBUGGER_PATH,
    }


def browse_url(service: ServiceDescriptor) -> str:
    url = f"http://{service.env(DOCKER_MACHINE_IP)}:{service.env(HTTP_PORT)}"
    if service.platform_tag == "api":
        url += "/swagger"
    return url


def build_launch_config(
    service: ServiceDescriptor, program: str, shared_path: Path
) -> Dict[str, Any]:
    """launch.json payload for a worker or an app checkout."""
    tag_cap = service.tag_cap
    shadow_app = f"{SHADOW_ROOT}/{tag_cap}/src/"
    shadow_tests = f"{SHADOW_ROOT}/{tag_cap}/test/"
    shared = str(shared_path)
    env = dict(service.environment)

    debug_nest: Dict[str, Any] = {
        "name": "Debug Nest",
        "type": "coreclr",
        "request": "launch",
        "cwd": shadow_app,
        "program": program,
        "sourceFileMap": {shadow_app: _host_path("src"), SHADOW_SHARED: shared},
        "env": env,
        "pipeTransport": _pipe_transport(service.container_name),
    }
    debug_tests: Dict[str, Any] = {
        "name": "Debug Unit Tests",
        "type": "coreclr",
        "request": "attach",
        "processId": UNIT_TEST_PROCESS,
        "requireExactSource": False,
        "sourceFileMap": {
            shadow_app: _host_path("src"),
            shadow_tests: _host_path("test"),
            SHADOW_SHARED: shared,
        },
        "pipeTransport": _pipe_transport(service.container_name),
    }

    if service.role is Role.WORKER:
        debug_tests["env"] = env
        return {"version": "0.2.0", "configurations": [debug_nest, debug_tests]}

    page = browse_url(service)
    debug_nest["launchBrowser"] = {
        "enabled": True,
        "args": page,
        "windows": {"command": "cmd.exe", "args": f"/C start {page}"},
        "osx": {"command": "open"},
        "linux": {"command": "xdg-open"},
    }
    return {"version": "2.0.0", "configurations": [debug_nest, debug_tests]}


def _decode_key(service: ServiceDescriptor, name: str) -> str:
    raw = service.env(name)
    if not raw:
        raise ArtifactWriteFailed(f"The app service has no {name}")
    try:
        decoded = base64.b64decode(raw, validate=True).decode("ascii")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ArtifactWriteFailed(f"{name} is not valid base64: {exc}") from exc
    return decoded.replace("\\n", "\n")


def _template_env() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )


def render_ssh_config(app: ServiceDescriptor, tree_key_path: Path, contact_key_path: Path) -> str:
    template = _template_env().get_template("ssh_config.jinja2")
    return template.render(
        app_tag=app.env(APP_TAG),
        contact_id=app.env(CONTACT_ID),
        tree_key_path=tree_key_path.as_posix(),
        contact_key_path=contact_key_path.as_posix(),
    )


def setup_git(root: Path, settings: NestSettings, progress: ProgressSink) -> Path:
    """Write the key material and ssh config used by every checkout."""
    app = settings.app
    if app is None:
        raise ArtifactWriteFailed("No app service found to set up git with")

    root = Path(root)
    tree_key_path = root / TREE_KEY_FILE
    contact_key_path = root / CONTACT_KEY_FILE
    ssh_config_path = root / SSH_CONFIG_FILE

    tree_key = _decode_key(app, TREE_KEY)
    contact_key = _decode_key(app, CONTACT_KEY)
    try:
        tree_key_path.write_text(tree_key, encoding="utf-8")
        contact_key_path.write_text(contact_key, encoding="utf-8")
        # ssh refuses private keys readable by others
        contact_key_path.chmod(0o600)
        tree_key_path.chmod(0o600)
        ssh_config_path.write_text(
            render_ssh_config(app, tree_key_path, contact_key_path), encoding="utf-8"
        )
    except OSError as exc:
        raise ArtifactWriteFailed(f"Failed to write git key material: {exc}") from exc

    progress.step("Git setup on root folder complete .. ")
    return ssh_config_path


class ProjectMaterializer:
    """Writes nest.json and .vscode/launch.json into a service checkout."""

    def __init__(
        self, runner: Optional[CommandRunner] = None, config: Optional[NestConfig] = None
    ) -> None:
        self.runner = runner or CommandRunner()
        self.config = config or NestConfig()

    async def materialize(
        self,
        service: ServiceDescriptor,
        progress: ProgressSink,
        cancel: Optional[asyncio.Event] = None,
    ) -> ServiceDescriptor:
        root = Path(service.env(FOLDER_ROOT))
        checkout = project_folder(root, service)

        if service.role is Role.APP:
            service.environment.update(APP_ENVIRONMENT)
        sanitize_environment(service)

        if not checkout.is_dir():
            raise ArtifactWriteFailed(f"Download failed. {checkout} does not exist")

        try:
            save_project(checkout, service)
        except OSError as exc:
            raise ArtifactWriteFailed(f"nest.json create failed: {exc}") from exc
        progress.step("Ensured a nest project file exist, creating assets ... ")

        launch = build_launch_config(
            service, program_path(checkout, service.tag_cap), shared_folder(root)
        )
        launch_path = checkout / ".vscode" / "launch.json"
        progress.step(f"Emitting {launch_path}")
        try:
            launch_path.parent.mkdir(parents=True, exist_ok=True)
            launch_path.write_text(json.dumps(launch, indent=2), encoding="utf-8")
        except OSError as exc:
            raise ArtifactWriteFailed(f"Failed to create {launch_path}: {exc}") from exc
        progress.step(f"Launch file saved -> {launch_path}")

        await self.integrate_git(checkout, root, progress, cancel)
        if service.role is Role.APP:
            await self.integrate_git(shared_folder(root), root, progress, cancel)

        progress.step("Nest assets created.")
        return service

    async def integrate_git(
        self,
        folder: Path,
        root: Path,
        progress: ProgressSink,
        cancel: Optional[asyncio.Event] = None,
    ) -> None:
        """Point the checkout's git at the devkit ssh config."""
        if not folder.is_dir():
            raise GitIntegrationFailed(f"Cannot integrate git, {folder} does not exist")

        ssh_config = (Path(root) / SSH_CONFIG_FILE).as_posix()
        commands = [
            [self.config.git, "config", "--local", "core.sshcommand", f"ssh -F {ssh_config}"],
            [self.config.git, "config", "--local", "core.fileMode", "false"],
        ]
        for args in commands:
            result = await self.runner.run(
                args, cwd=folder, timeout=self.config.command_timeout, cancel=cancel
            )
            if not result.ok:
                raise GitIntegrationFailed(
                    f"{folder} <- Failed to integrate git [{result.output.strip()}]"
                )
        progress.step(f"Integration of git folder complete -> {folder}")
