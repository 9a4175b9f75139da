"""Runtime configuration for the Nest devkit tooling."""

from __future__ import annotations

import os
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "NEST_DEVKIT_"

# Container port probed by the discovery pipeline, keyed by topology key.
DEFAULT_VIEW_PORTS: Dict[str, int] = {
    "storage-mariadb": 80,
    "batch-rabbitmq": 15672,
    "build-jenkins": 8080,
    # legacy service kinds
    "db-mariadb": 80,
    "queue-rabbitmq": 15672,
}

APP_HTTP_PORT = 5000
WORKER_SSH_PORT = 22
LOOPBACK_IP = "127.0.0.1"


class NestConfig(BaseModel):
    """Binaries, deadlines and lookup tables used by the orchestrator."""

    docker: str = "docker"
    docker_compose: str = "docker-compose"
    docker_machine: str = "docker-machine"
    git: str = "git"
    nester_log: str = Field(
        "/tmp/console_cmd", description="Log file passed to nester with -l"
    )
    command_timeout: Optional[float] = Field(
        None, description="Seconds before a subprocess is killed; None waits forever"
    )
    view_ports: Dict[str, int] = Field(default_factory=dict)
    ci_url: str = "http://127.0.0.1:8080/job/Local-CI/build?token=nesty"
    cd_url: str = "http://127.0.0.1:8080/job/Remote-Cd/build?token=nesty"

    @field_validator("command_timeout")
    @classmethod
    def _positive_timeout(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value <= 0:
            raise ValueError("command_timeout must be positive")
        return value

    def view_port_table(self) -> Dict[str, int]:
        table = dict(DEFAULT_VIEW_PORTS)
        table.update(self.view_ports)
        return table

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "NestConfig":
        """Build a config from NEST_DEVKIT_* variables, then apply overrides.

        ``NEST_DEVKIT_VIEW_PORTS`` takes ``key=port`` pairs separated by commas.
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, object] = {}
        for name in ("docker", "docker_compose", "docker_machine", "git", "nester_log", "ci_url", "cd_url"):
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw:
                values[name] = raw

        timeout = environ.get(ENV_PREFIX + "COMMAND_TIMEOUT")
        if timeout:
            values["command_timeout"] = float(timeout)

        ports = environ.get(ENV_PREFIX + "VIEW_PORTS")
        if ports:
            table: Dict[str, int] = {}
            for pair in ports.split(","):
                if not pair.strip():
                    continue
                key, _, port = pair.partition("=")
                table[key.strip()] = int(port)
            values["view_ports"] = table

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)
