import json
import pytest
from pathlib import Path

from nest_devkit.errors import TopologyError, TopologyNotFound
from nest_devkit.topology import (
    DOCKER_MACHINE_IP,
    FOLDER_ROOT,
    NestSettings,
    Role,
    ServiceDescriptor,
    discover_settings,
    find_devkit,
    find_root_folder,
    parse_topology,
)

from conftest import RecordingProgress


def _doc(services: dict) -> str:
    import yaml

    return yaml.safe_dump({"version": "3", "services": services}, sort_keys=False)


def test_discovery_classifies_app_and_services(nest_root):
    progress = RecordingProgress()
    settings = discover_settings(nest_root, progress)

    assert settings.names == ["app1", "storage-mariadb"]
    assert settings.app.key == "app1"
    assert settings.app.role is Role.APP
    assert settings.service("storage").key == "storage-mariadb"
    assert settings.workers == []
    assert "Found a handler component app1" in progress.steps
    assert "Found a service component storage-mariadb" in progress.steps


def test_untagged_services_are_excluded(nest_root):
    settings = discover_settings(nest_root)
    assert "redis" not in settings.names
    assert settings.get("redis") is None


def test_folder_root_is_injected(tmp_path):
    text = _doc({"w1": {"environment": {"NEST_PLATFORM_TAG": "worker"}}})
    settings = parse_topology(text, tmp_path)
    assert settings.by_key["w1"].environment[FOLDER_ROOT] == str(tmp_path)


@pytest.mark.parametrize("kind", ["build", "storage", "batch", "db", "queue"])
def test_recognized_service_kinds(tmp_path, kind):
    text = _doc({f"{kind}-svc": {"environment": {"NEST_APP_SERVICE": kind}}})
    settings = parse_topology(text, tmp_path)
    assert settings.service(kind).key == f"{kind}-svc"


@pytest.mark.parametrize("kind", ["cache", "", "Storage", "mail"])
def test_unknown_service_kinds_are_never_registered(tmp_path, kind):
    text = _doc({"svc": {"environment": {"NEST_APP_SERVICE": kind}}})
    settings = parse_topology(text, tmp_path)
    assert settings.services == {}
    assert settings.names == []


def test_worker_may_also_be_a_service(tmp_path):
    """The two classification switches are independent."""
    text = _doc(
        {
            "jobs": {
                "environment": {
                    "NEST_PLATFORM_TAG": "worker",
                    "NEST_APP_SERVICE": "batch",
                    "NEST_TAG_CAP": "Jobs",
                }
            }
        }
    )
    progress = RecordingProgress()
    settings = parse_topology(text, tmp_path, progress)

    assert settings.names == ["jobs"]
    assert settings.workers[0] is settings.service("batch")
    assert "Found a worker component jobs" in progress.steps
    assert "Found a service component jobs" in progress.steps


def test_last_app_wins(tmp_path):
    text = _doc(
        {
            "web": {"environment": {"NEST_PLATFORM_TAG": "mvc"}},
            "api": {"environment": {"NEST_PLATFORM_TAG": "api"}},
        }
    )
    settings = parse_topology(text, tmp_path)
    assert settings.app.key == "api"
    assert settings.names == ["web", "api"]


def test_environment_list_syntax_and_scalars(tmp_path):
    text = _doc(
        {
            "api": {
                "container_name": "c_api",
                "environment": ["NEST_PLATFORM_TAG=api", "NEST_FLAG", "A=b=c"],
            },
            "db": {"environment": {"NEST_APP_SERVICE": "storage", "DEBUG": True, "N": None}},
        }
    )
    settings = parse_topology(text, tmp_path)
    api = settings.by_key["api"]
    assert api.container_name == "c_api"
    assert api.environment["NEST_FLAG"] == ""
    assert api.environment["A"] == "b=c"
    db = settings.by_key["db"]
    assert db.container_name == "db"
    assert db.environment["DEBUG"] == "true"
    assert db.environment["N"] == ""


def test_invalid_documents(tmp_path):
    with pytest.raises(TopologyError):
        parse_topology("services: [unclosed", tmp_path)
    with pytest.raises(TopologyError):
        parse_topology("version: '3'\n", tmp_path)


@pytest.mark.parametrize("entry", ["a: oops", "a: [1, 2]", "a: 3"])
def test_service_entry_must_be_a_mapping(tmp_path, entry):
    with pytest.raises(TopologyError, match="Invalid service 'a'"):
        parse_topology(f"services:\n  {entry}\n", tmp_path)


def test_tag_cap_is_required():
    service = ServiceDescriptor(key="api", container_name="c_api")
    with pytest.raises(TopologyError):
        service.tag_cap


def test_derived_views_alias_by_key(nest_root):
    """Writes through one view are visible through every other view."""
    settings = discover_settings(nest_root)
    settings.app.environment[DOCKER_MACHINE_IP] = "10.0.0.5"
    assert settings.by_key["app1"].environment[DOCKER_MACHINE_IP] == "10.0.0.5"


def test_names_must_resolve():
    with pytest.raises(ValueError):
        NestSettings.model_validate({"names": ["ghost"], "byKey": {}})


def test_document_lists_views_as_keys(nest_root):
    settings = discover_settings(nest_root)
    doc = json.loads(settings.to_json())
    assert doc["app"] == "app1"
    assert doc["services"] == {"storage": "storage-mariadb"}
    assert doc["workers"] == []
    assert set(doc["byKey"]) == {"app1", "storage-mariadb"}


class TestRootDiscovery:
    def test_devkit_in_folder(self, nest_root):
        assert find_devkit(nest_root).name == "myapp.devkit"
        assert find_root_folder(nest_root) == nest_root.resolve()

    def test_from_project_checkout(self, nest_root):
        checkout = nest_root / "source" / "App1"
        checkout.mkdir(parents=True)
        assert find_root_folder(checkout) == nest_root.resolve()

    def test_from_project_marker(self, tmp_path, nest_root):
        elsewhere = tmp_path / "elsewhere"
        elsewhere.mkdir()
        (elsewhere / "nest.json").write_text(
            json.dumps({"environment": {FOLDER_ROOT: str(nest_root)}}), encoding="utf-8"
        )
        assert find_root_folder(elsewhere) == Path(str(nest_root))

    def test_not_found(self, tmp_path):
        with pytest.raises(TopologyNotFound):
            find_root_folder(tmp_path)
