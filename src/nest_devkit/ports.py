"""Dynamic port and docker host IP discovery."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .config import LOOPBACK_IP, NestConfig
from .errors import CommandNotFound, CommandTimeout, PortResolutionFailed
from .executor import CommandRunner
from .progress import ProgressSink
from .topology import VIEW_CONTAINER_PORT, ServiceDescriptor

logger = logging.getLogger(__name__)


def parse_port(response: str) -> str:
    """Extract the host port from ``docker port`` output.

    ``0.0.0.0:32768`` gives ``32768``. Only the first binding is used when
    docker reports several (IPv4 and IPv6).
    """
    lines = [line.strip() for line in (response or "").splitlines() if line.strip()]
    if not lines or ":" not in lines[0]:
        raise PortResolutionFailed(f"Unexpected port binding {response!r}")
    port = lines[0].rsplit(":", 1)[-1]
    if not port.isdigit():
        raise PortResolutionFailed(f"Unexpected port binding {response!r}")
    return port


class PortResolver:
    def __init__(
        self, runner: Optional[CommandRunner] = None, config: Optional[NestConfig] = None
    ) -> None:
        self.runner = runner or CommandRunner()
        self.config = config or NestConfig()

    def view_port_for(self, service: ServiceDescriptor) -> int:
        """Container port the discovery pipeline probes for ``service``."""
        explicit = service.environment.get(VIEW_CONTAINER_PORT)
        if explicit not in (None, ""):
            try:
                return int(explicit)
            except ValueError as exc:
                raise PortResolutionFailed(
                    f"{service.key}: {VIEW_CONTAINER_PORT} is not a port ({explicit!r})"
                ) from exc

        table = self.config.view_port_table()
        if service.key in table:
            return table[service.key]
        raise PortResolutionFailed(
            f"No view port is configured for {service.key}; "
            f"set {VIEW_CONTAINER_PORT} on the service"
        )

    async def resolve_port(
        self,
        service: ServiceDescriptor,
        container_port: int,
        env_key: str,
        cancel: Optional[asyncio.Event] = None,
    ) -> ServiceDescriptor:
        args = [self.config.docker, "port", service.container_name, str(container_port)]
        try:
            result = await self.runner.run(
                args, timeout=self.config.command_timeout, cancel=cancel
            )
        except (CommandNotFound, CommandTimeout) as exc:
            raise PortResolutionFailed(f"{service.container_name}: {exc}") from exc

        if not result.ok:
            raise PortResolutionFailed(
                f"Failed to query port {container_port} of {service.container_name}: "
                f"{result.output.strip()}"
            )
        service.environment[env_key] = parse_port(result.output)
        logger.debug(
            "%s:%s -> %s=%s",
            service.container_name,
            container_port,
            env_key,
            service.environment[env_key],
        )
        return service

    async def resolve_host_ip(self, progress: ProgressSink) -> str:
        """The docker-machine IP, or the loopback address when there is none."""
        try:
            result = await self.runner.run(
                [self.config.docker_machine, "ip"], timeout=self.config.command_timeout
            )
        except (CommandNotFound, CommandTimeout) as exc:
            logger.info("docker-machine unavailable: %s", exc)
            result = None

        ip = ""
        if result is not None and result.ok:
            lines = result.output.strip().splitlines()
            ip = lines[-1].strip() if lines else ""
        if not ip:
            progress.step(f"docker-machine ip did not resolve docker ip.. using {LOOPBACK_IP}")
            logger.warning("Falling back to %s for the docker host", LOOPBACK_IP)
            return LOOPBACK_IP

        progress.step(f"Docker IP is ... {ip}")
        return ip
