import asyncio
import pytest
from pathlib import Path

from nest_devkit.config import NestConfig
from nest_devkit.executor import CommandResult
from nest_devkit.pipeline import Orchestrator

TREE_KEY_B64 = "LS0tLS1CRUdJTiBUUkVFIEtFWS0tLS0tXG5hYmNcbi0tLS0tRU5EIFRSRUUgS0VZLS0tLS0="
CONTACT_KEY_B64 = (
    "LS0tLS1CRUdJTiBDT05UQUNUIEtFWS0tLS0tXG54eXpcbi0tLS0tRU5EIENPTlRBQ1QgS0VZLS0tLS0="
)

DEVKIT = f"""\
version: "3"
services:
  app1:
    container_name: c_app1
    image: nestapp/api
    environment:
      NEST_PLATFORM_TAG: api
      NEST_TAG: app1
      NEST_TAG_CAP: App1
      NEST_APP_TAG: myapp
      NEST_CONTACT_ID: "42"
      NEST_TREE_KEY: {TREE_KEY_B64}
      NEST_CONTACT_KEY: {CONTACT_KEY_B64}
      NEST_SERVICES_PASSWORD: s3cret
  storage-mariadb:
    container_name: c_storage
    environment:
      NEST_APP_SERVICE: storage
      NEST_APP_TAG: myapp
      NEST_SERVICES_PASSWORD: s3cret
  redis:
    image: redis
"""

CSPROJ = """\
<Project Sdk="Microsoft.NET.Sdk.Web">
  <PropertyGroup>
    <TargetFramework>netcoreapp2.1</TargetFramework>
  </PropertyGroup>
</Project>
"""


def make_checkout(root: Path, tag_cap: str = "App1") -> Path:
    """Lay out what ``deployment pull`` leaves behind on the host."""
    checkout = root / "source" / tag_cap
    (checkout / "src").mkdir(parents=True, exist_ok=True)
    (checkout / "src" / f"{tag_cap}.csproj").write_text(CSPROJ, encoding="utf-8")
    (root / "source" / "shared").mkdir(parents=True, exist_ok=True)
    return checkout


class FakeRunner:
    """
    Scripted stand-in for CommandRunner.
    Records every command and answers docker, docker-compose and git calls
    from lookup tables instead of spawning processes.
    """

    def __init__(self):
        self.calls = []
        self.cwds = []
        self.ports = {}
        self.failures = {}
        self.outputs = {}
        self.effects = {}
        self.machine_ip = None
        self.git_version = "git version 2.39.2"
        self.compose_code = 0

    async def run(self, args, cwd=None, on_line=None, timeout=None, cancel=None):
        args = [str(a) for a in args]
        self.calls.append(args)
        self.cwds.append((args, cwd))
        # let sibling pipelines interleave like real subprocesses do
        await asyncio.sleep(0)
        result = self._respond(args)
        if on_line is not None:
            for line in result.output.splitlines():
                on_line(line)
        return result

    def remote_calls(self, container):
        return [
            " ".join(self._tokens(call))
            for call in self.calls
            if call[:2] == ["docker", "exec"] and container in call
        ]

    @staticmethod
    def _tokens(args):
        if "nester" not in args:
            return args[3:]
        rest = args[args.index("nester") + 1 :]
        if rest[:1] == ["-l"]:
            rest = rest[2:]
        return rest

    def _respond(self, args):
        program = args[0]
        if program == "git":
            if args[1] == "--version":
                return CommandResult(0, self.git_version)
            return CommandResult(0)
        if program == "docker-machine":
            if self.machine_ip:
                return CommandResult(0, self.machine_ip)
            return CommandResult(1, 'Host "default" does not exist')
        if program == "docker-compose":
            return CommandResult(self.compose_code, "Creating network nest_default")
        if args[1] == "port":
            key = (args[2], int(args[3]))
            if key in self.ports:
                return CommandResult(0, self.ports[key])
            return CommandResult(1, f"Error: No public port '{args[3]}/tcp' published")
        if args[1] == "exec":
            container = args[3] if args[2] == "-t" else args[2]
            key = (container, " ".join(self._tokens(args)))
            if key in self.effects:
                self.effects[key]()
            if key in self.failures:
                code, output = self.failures[key]
                return CommandResult(code, output)
            return CommandResult(0, self.outputs.get(key, ""))
        return CommandResult(127, f"{program}: command not found")


class RecordingProgress:
    def __init__(self):
        self.started = []
        self.steps = []
        self.failures = []
        self.ended = 0

    def start(self, subject):
        self.started.append(subject)

    def step(self, message):
        self.steps.append(message)

    def fail(self, message):
        self.failures.append(message)

    def end(self):
        self.ended += 1


@pytest.fixture
def nest_root(tmp_path):
    """
    Creates a workspace root holding a devkit with one api app,
    one storage service and one untagged service.
    """
    root = tmp_path / "nest"
    root.mkdir()
    (root / "myapp.devkit").write_text(DEVKIT, encoding="utf-8")
    return root


@pytest.fixture
def runner(nest_root):
    fake = FakeRunner()
    fake.ports[("c_app1", 22)] = "0.0.0.0:2200"
    fake.ports[("c_app1", 5000)] = "0.0.0.0:5000"
    fake.ports[("c_storage", 80)] = "0.0.0.0:9080"
    # the container drops the source on the bind mounted folder while pulling
    fake.effects[("c_app1", "deployment pull")] = lambda: make_checkout(nest_root)
    return fake


@pytest.fixture
def progress():
    return RecordingProgress()


@pytest.fixture
def orchestrator(nest_root, runner, progress):
    return Orchestrator(nest_root, config=NestConfig(), runner=runner, progress=progress)
