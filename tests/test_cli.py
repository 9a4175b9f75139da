import asyncio
import json
import signal
import pytest

from nest_devkit import __main__ as nest_main
from nest_devkit.__main__ import _install_interrupt, build_parser, main as cli_main
from nest_devkit.pipeline import Orchestrator
from nest_devkit.settings import SettingsStore
from nest_devkit.topology import DOCKER_MACHINE_IP, SERVICE_VIEW_PORT, discover_settings


@pytest.fixture
def fake_runner(mocker, runner):
    """Route every subprocess the CLI starts through the scripted runner."""
    mocker.patch("nest_devkit.pipeline.CommandRunner", return_value=runner)
    return runner


def _save_settings(root):
    settings = discover_settings(root)
    storage = settings.service("storage")
    storage.environment[DOCKER_MACHINE_IP] = "127.0.0.1"
    storage.environment[SERVICE_VIEW_PORT] = "9080"
    SettingsStore(root).save(settings)


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_scaffold_up(nest_root, fake_runner, capsys):
    code = cli_main(["--dir", str(nest_root), "scaffold", "up"])

    out = capsys.readouterr().out
    assert code == 0
    assert "--> scaffold up started" in out
    assert "[scaffold up] Found a handler component app1" in out
    assert "<-- scaffold up ended" in out
    assert (nest_root / "settings.json").is_file()


def test_scaffold_failure_exit_code(nest_root, fake_runner, capsys):
    fake_runner.failures[("c_app1", "deployment build")] = (1, "build failed")

    code = cli_main(["--dir", str(nest_root), "scaffold", "up"])

    err = capsys.readouterr().err
    assert code == 1
    assert "Error: The scaffolding failed for: app1" in err
    assert not (nest_root / "settings.json").exists()


def test_scaffold_refused_inside_a_project(nest_root, fake_runner, capsys):
    project = nest_root / "source" / "App1"
    project.mkdir(parents=True)
    (project / "nest.json").write_text("{}", encoding="utf-8")

    assert cli_main(["--dir", str(project), "scaffold", "up"]) == 1
    assert "root folder" in capsys.readouterr().err


def test_declined_confirmation(nest_root, fake_runner, mocker, capsys):
    mocker.patch("builtins.input", return_value="no")
    (nest_root / "source").mkdir()

    assert cli_main(["--dir", str(nest_root), "scaffold", "down"]) == 0
    assert (nest_root / "source").exists()
    assert "Cancelled." in capsys.readouterr().out


def test_yes_skips_the_prompt(nest_root, fake_runner, mocker):
    prompt = mocker.patch("builtins.input")
    (nest_root / "source").mkdir()

    assert cli_main(["--dir", str(nest_root), "--yes", "scaffold", "down"]) == 0
    prompt.assert_not_called()
    assert not (nest_root / "source").exists()


def test_project_command_outside_a_project(nest_root, fake_runner, capsys):
    assert cli_main(["--dir", str(nest_root), "push"]) == 1
    assert "is not a Nest project" in capsys.readouterr().err


def test_view_and_list(nest_root, capsys):
    _save_settings(nest_root)

    assert cli_main(["--dir", str(nest_root), "view", "data"]) == 0
    out = capsys.readouterr().out
    assert "http://127.0.0.1:9080" in out
    assert "password - s3cret" in out

    assert cli_main(["--dir", str(nest_root), "list"]) == 0
    assert capsys.readouterr().out.split() == ["shared", "app1"]

    assert cli_main(["--dir", str(nest_root), "view", "queue"]) == 1
    assert "batch service has not been configured" in capsys.readouterr().err


def test_select_prints_project_folder(nest_root, capsys):
    _save_settings(nest_root)
    assert cli_main(["--dir", str(nest_root), "select", "app1"]) == 0
    assert capsys.readouterr().out.strip() == str(nest_root.resolve() / "source" / "App1")


def test_missing_settings(nest_root, capsys):
    assert cli_main(["--dir", str(nest_root), "kick", "ci"]) == 1
    assert "nest scaffold up" in capsys.readouterr().err


def test_unit_test_debug_host(nest_root, fake_runner, capsys):
    assert cli_main(["--dir", str(nest_root), "scaffold", "up"]) == 0
    capsys.readouterr()
    fake_runner.outputs[("c_app1", "deployment unit_test_debug_host")] = "777"

    project = nest_root / "source" / "App1"
    assert cli_main(["--dir", str(project), "unit-test-debug-host"]) == 0
    assert capsys.readouterr().out.strip() == "777"


def test_timeout_reaches_the_config(nest_root, fake_runner, mocker):
    spy = mocker.spy(fake_runner, "run")
    cli_main(["--dir", str(nest_root), "--timeout", "12", "--yes", "scaffold", "down"])
    assert spy.call_args.kwargs["timeout"] == 12.0


def test_saved_settings_document(nest_root, fake_runner):
    cli_main(["--dir", str(nest_root), "scaffold", "up"])
    doc = json.loads((nest_root / "settings.json").read_text(encoding="utf-8"))
    assert doc["names"] == ["app1", "storage-mariadb"]
    assert doc["app"] == "app1"


@pytest.mark.asyncio
async def test_interrupt_sets_the_cancel_event(mocker, nest_root):
    orchestrator = Orchestrator(nest_root, runner=mocker.Mock(), cancel=asyncio.Event())
    loop = mocker.Mock()

    assert _install_interrupt(loop, orchestrator) is True
    sig, handler = loop.add_signal_handler.call_args.args
    assert sig == signal.SIGINT

    handler()
    assert orchestrator.cancel_event.is_set()


@pytest.mark.asyncio
async def test_interrupt_unsupported_by_the_loop(mocker, nest_root):
    orchestrator = Orchestrator(nest_root, runner=mocker.Mock(), cancel=asyncio.Event())
    loop = mocker.Mock()
    loop.add_signal_handler.side_effect = NotImplementedError

    assert _install_interrupt(loop, orchestrator) is False


def test_commands_run_with_interrupt_handling(nest_root, fake_runner, mocker):
    install = mocker.spy(nest_main, "_install_interrupt")

    assert cli_main(["--dir", str(nest_root), "--yes", "scaffold", "down"]) == 0
    assert install.call_count == 1
    assert install.call_args.args[1].cancel_event is not None
