"""Settings cache and project marker handling."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .errors import NotAProject, SaveSettingsFailed, SettingsError, SettingsNotFound
from .topology import PROJECT_MARKER, NestSettings, ServiceDescriptor

SETTINGS_FILE = "settings.json"


class SettingsStore:
    """Persists the classified topology of one workspace root."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    @property
    def path(self) -> Path:
        return self.root / SETTINGS_FILE

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> NestSettings:
        """Load the cached settings verbatim; the devkit is not re-read."""
        if not self.exists():
            raise SettingsNotFound(
                f"No nest settings found at {self.path}. Run 'nest scaffold up' first."
            )
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return NestSettings.model_validate(data)
        except (ValueError, ValidationError) as exc:
            raise SettingsError(f"Failed to parse settings at {self.path}: {exc}") from exc

    def save(self, settings: NestSettings) -> Path:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            self.path.write_text(settings.to_json(), encoding="utf-8")
        except OSError as exc:
            raise SaveSettingsFailed(f"{SETTINGS_FILE} save failed: {exc}") from exc
        return self.path


def is_project(folder: Path) -> bool:
    return (Path(folder) / PROJECT_MARKER).is_file()


def load_project(folder: Path) -> Optional[ServiceDescriptor]:
    """Read the nest.json marker of a project checkout, if there is one."""
    marker = Path(folder) / PROJECT_MARKER
    if not marker.is_file():
        return None
    try:
        return ServiceDescriptor.model_validate_json(marker.read_text(encoding="utf-8"))
    except ValidationError as exc:
        raise SettingsError(f"Failed to parse project marker {marker}: {exc}") from exc


def require_project(folder: Path) -> ServiceDescriptor:
    project = load_project(folder)
    if project is None:
        raise NotAProject(
            f"{folder} is not a Nest project. Open a folder with a valid Nest project ({PROJECT_MARKER}) first."
        )
    return project


def save_project(folder: Path, service: ServiceDescriptor) -> Path:
    marker = Path(folder) / PROJECT_MARKER
    marker.write_text(
        json.dumps(service.model_dump(mode="json"), indent=2), encoding="utf-8"
    )
    return marker
