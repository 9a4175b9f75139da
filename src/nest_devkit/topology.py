"""Typed model of a Nest devkit topology.

A devkit is a docker-compose document whose services carry ``NEST_*``
environment tags. Parsing it yields a :class:`NestSettings` in which every
tagged service is classified as an app, a worker and/or an infrastructure
service. The app/worker/service views are derived from ``by_key`` on
demand, so they always alias the same descriptor objects.
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import TopologyError, TopologyNotFound
from .progress import NullProgress, ProgressSink

DEVKIT_SUFFIX = ".devkit"
PROJECT_MARKER = "nest.json"

# Environment keys read from the topology
PLATFORM_TAG = "NEST_PLATFORM_TAG"
APP_SERVICE = "NEST_APP_SERVICE"
TAG = "NEST_TAG"
TAG_CAP = "NEST_TAG_CAP"
APP_TAG = "NEST_APP_TAG"
CONTACT_ID = "NEST_CONTACT_ID"
CONTACT_KEY = "NEST_CONTACT_KEY"
TREE_KEY = "NEST_TREE_KEY"
SERVICES_PASSWORD = "NEST_SERVICES_PASSWORD"
VIEW_CONTAINER_PORT = "NEST_SERVICE_VIEW_CONTAINER_PORT"

# Environment keys injected while provisioning
FOLDER_ROOT = "NEST_FOLDER_ROOT"
DOCKER_MACHINE_IP = "NEST_DOCKER_MACHINE_IP"
SSH_PORT = "NEST_SSH_PORT"
HTTP_PORT = "NEST_HTTP_PORT"
SERVICE_VIEW_PORT = "NEST_SERVICE_VIEW_PORT"

APP_PLATFORM_TAGS = ("mvc", "api")
WORKER_PLATFORM_TAG = "worker"
SERVICE_KINDS = ("build", "storage", "batch")
LEGACY_SERVICE_KINDS = ("db", "queue")

EnvValue = Union[str, int, float]


class Role(str, Enum):
    APP = "app"
    WORKER = "worker"
    SERVICE = "service"


class ServiceDescriptor(BaseModel):
    """One topology entry plus the runtime parameters resolved for it."""

    key: str
    container_name: str
    environment: Dict[str, EnvValue] = Field(default_factory=dict)

    # keep the remaining compose fields (image, ports, volumes, ...)
    model_config = {"extra": "allow"}

    @field_validator("key", "container_name")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("service key and container_name cannot be empty")
        return value

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Dict[str, Any]:
        """Accept compose mapping or ``KEY=value`` list syntax."""
        if value is None:
            return {}
        if isinstance(value, list):
            mapping: Dict[str, Any] = {}
            for item in value:
                name, _, raw = str(item).partition("=")
                mapping[name.strip()] = raw
            value = mapping
        if not isinstance(value, dict):
            raise ValueError("environment must be a mapping or a list of KEY=value")

        normalized: Dict[str, Any] = {}
        for name, raw in value.items():
            if raw is None:
                raw = ""
            elif isinstance(raw, bool):
                raw = str(raw).lower()
            elif not isinstance(raw, (str, int, float)):
                raw = str(raw)
            normalized[str(name)] = raw
        return normalized

    @property
    def platform_tag(self) -> Optional[str]:
        value = self.environment.get(PLATFORM_TAG)
        return str(value) if value is not None else None

    @property
    def service_kind(self) -> Optional[str]:
        value = self.environment.get(APP_SERVICE)
        if value in SERVICE_KINDS or value in LEGACY_SERVICE_KINDS:
            return str(value)
        return None

    @property
    def role(self) -> Optional[Role]:
        if self.platform_tag in APP_PLATFORM_TAGS:
            return Role.APP
        if self.platform_tag == WORKER_PLATFORM_TAG:
            return Role.WORKER
        if self.service_kind:
            return Role.SERVICE
        return None

    @property
    def is_project(self) -> bool:
        """App and worker services have a source checkout to provision."""
        return self.role in (Role.APP, Role.WORKER)

    @property
    def tag_cap(self) -> str:
        value = self.environment.get(TAG_CAP)
        if not value:
            raise TopologyError(f"Service '{self.key}' has no {TAG_CAP}")
        return str(value)

    def env(self, name: str, default: str = "") -> str:
        value = self.environment.get(name)
        return default if value is None else str(value)


class NestSettings(BaseModel):
    """Classified topology owned by one workspace root."""

    names: List[str] = Field(default_factory=list)
    by_key: Dict[str, ServiceDescriptor] = Field(default_factory=dict, alias="byKey")

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def _names_resolve(self) -> "NestSettings":
        missing = [name for name in self.names if name not in self.by_key]
        if missing:
            raise ValueError(f"names without a byKey entry: {missing}")
        for key, service in self.by_key.items():
            if service.key != key:
                raise ValueError(f"byKey entry '{key}' holds service '{service.key}'")
        return self

    def add(self, service: ServiceDescriptor) -> None:
        if service.key not in self.by_key:
            self.names.append(service.key)
        self.by_key[service.key] = service

    def get(self, key: str) -> Optional[ServiceDescriptor]:
        return self.by_key.get(key)

    def ordered(self) -> List[ServiceDescriptor]:
        return [self.by_key[name] for name in self.names]

    @property
    def app(self) -> Optional[ServiceDescriptor]:
        # the last app-tagged service wins
        app = None
        for service in self.ordered():
            if service.platform_tag in APP_PLATFORM_TAGS:
                app = service
        return app

    @property
    def workers(self) -> List[ServiceDescriptor]:
        return [s for s in self.ordered() if s.platform_tag == WORKER_PLATFORM_TAG]

    @property
    def services(self) -> Dict[str, ServiceDescriptor]:
        found: Dict[str, ServiceDescriptor] = {}
        for service in self.ordered():
            if service.service_kind:
                found[service.service_kind] = service
        return found

    def service(self, kind: str) -> Optional[ServiceDescriptor]:
        return self.services.get(kind)

    def to_document(self) -> Dict[str, Any]:
        """JSON-ready payload; derived views are written as key references."""
        payload = self.model_dump(mode="json", by_alias=True)
        app = self.app
        payload["app"] = app.key if app else None
        payload["services"] = {kind: s.key for kind, s in self.services.items()}
        payload["workers"] = [s.key for s in self.workers]
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_document(), indent=2)


def find_devkit(folder: Path) -> Optional[Path]:
    """Return the first ``*.devkit`` file in ``folder``."""
    if not folder.is_dir():
        return None
    candidates = sorted(p for p in folder.iterdir() if p.name.endswith(DEVKIT_SUFFIX) and p.is_file())
    return candidates[0] if candidates else None


def find_root_folder(start: Path) -> Path:
    """Locate the workspace root from the root itself or a project checkout."""
    start = Path(start).resolve()
    if find_devkit(start):
        return start

    # project checkouts live in <root>/source/<TagCap>
    grandparent = (start / ".." / "..").resolve()
    if find_devkit(grandparent):
        return grandparent

    marker = start / PROJECT_MARKER
    if marker.is_file():
        try:
            data = json.loads(marker.read_text(encoding="utf-8"))
            root = data["environment"][FOLDER_ROOT]
        except (ValueError, KeyError, TypeError) as exc:
            raise TopologyNotFound(f"Project marker {marker} has no {FOLDER_ROOT}: {exc}") from exc
        return Path(root)

    raise TopologyNotFound(
        f"No Nest devkit found at {start}. Open a folder with a valid Nest devkit first."
    )


def parse_topology(
    text: str, root: Path, progress: Optional[ProgressSink] = None
) -> NestSettings:
    """Classify every service of a devkit document."""
    progress = progress or NullProgress()
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise TopologyError(f"Failed to parse devkit: {exc}") from exc

    services = data.get("services") if isinstance(data, dict) else None
    if not isinstance(services, dict):
        raise TopologyError("The devkit has no 'services' mapping")

    settings = NestSettings()
    for key, entry in services.items():
        if entry is None:
            entry = {}
        if not isinstance(entry, dict):
            raise TopologyError(f"Invalid service '{key}': expected a mapping, got {entry!r}")
        entry = dict(entry)
        entry["key"] = str(key)
        entry["container_name"] = entry.get("container_name") or str(key)
        try:
            service = ServiceDescriptor.model_validate(entry)
        except ValueError as exc:
            raise TopologyError(f"Invalid service '{key}': {exc}") from exc

        # the two switches are independent: a worker may also be a service
        classified = False
        if service.platform_tag in APP_PLATFORM_TAGS:
            progress.step(f"Found a handler component {key}")
            classified = True
        elif service.platform_tag == WORKER_PLATFORM_TAG:
            progress.step(f"Found a worker component {key}")
            classified = True
        if service.service_kind:
            progress.step(f"Found a service component {key}")
            classified = True

        if classified:
            service.environment[FOLDER_ROOT] = str(root)
            settings.add(service)

    return settings


def discover_settings(root: Path, progress: Optional[ProgressSink] = None) -> NestSettings:
    progress = progress or NullProgress()
    devkit = find_devkit(root)
    if devkit is None:
        raise TopologyNotFound(f"Failed to find a devkit in {root}")
    progress.step(f"Inspecting the devkit {devkit.name} ...")
    return parse_topology(devkit.read_text(encoding="utf-8"), root, progress)
