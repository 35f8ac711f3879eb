import sys

import pytest

from glaunch import cli
from glaunch.config import LaunchConfig
from glaunch.errors import EXIT_CONFIG, EXIT_EXEC_FAILED, EXIT_KILLED, EXIT_NO_DEVICES, EXIT_RESOURCE
from glaunch.errors import TelemetryError

from conftest import FakeProvider, gpu, run_in_fresh_interpreter


@pytest.fixture
def fake_discovery(monkeypatch, provider):
    monkeypatch.setattr(cli, "discover_provider", lambda: provider)
    return provider


def test_run_supervised_returns_child_code(provider):
    config = LaunchConfig(command=[sys.executable, "-c", "raise SystemExit(5)"], timing=True)
    assert cli.run(config, provider=provider) == 5


def test_main_launches_on_enough_devices(fake_discovery):
    code = cli.main(["--gpus", "2", "--memory-budget", "1000", "--time", "--",
                     sys.executable, "-c", "import os; assert os.environ['CUDA_VISIBLE_DEVICES'] == '1,2'"])
    assert code == 0


def test_main_best_fit_choice_reaches_child(fake_discovery):
    code = cli.main(["--gpus", "2", "--policy", "best", "--time",
                     sys.executable, "-c", "import os; assert os.environ['CUDA_VISIBLE_DEVICES'] == '2,0'"])
    assert code == 0


def test_main_times_out_without_enough_devices(fake_discovery):
    code = cli.main(["--gpus", "4", "--time", "true"])
    assert code == EXIT_NO_DEVICES
    assert fake_discovery.snapshot_calls == 3


def test_main_propagates_signal_death(fake_discovery):
    code = cli.main(["--time", sys.executable, "-c",
                     "import os, signal; os.kill(os.getpid(), signal.SIGKILL)"])
    assert code == EXIT_KILLED


def test_main_reports_exec_failure(fake_discovery):
    assert cli.main(["--time", "/nonexistent/program"]) == EXIT_EXEC_FAILED


def test_main_rejects_bad_configuration(fake_discovery):
    assert cli.main(["--gpus", "2"]) == EXIT_CONFIG
    assert fake_discovery.snapshot_calls == 0


def test_main_without_telemetry(monkeypatch):
    def no_gpus():
        raise TelemetryError("no NVIDIA driver")
    monkeypatch.setattr(cli, "discover_provider", no_gpus)
    assert cli.main(["--time", "true"]) == EXIT_RESOURCE


def test_failing_devices_are_excluded_not_fatal(monkeypatch):
    provider = FakeProvider([gpu(0, 100), gpu(1, 9000)], broken={1})
    monkeypatch.setattr(cli, "discover_provider", lambda: provider)
    code = cli.main(["--time", sys.executable, "-c",
                     "import os; assert os.environ['CUDA_VISIBLE_DEVICES'] == '0'"])
    assert code == 0


# ─── Output relay and direct mode, out of process ─────────────────────────────

def test_log_captures_supervised_child(tmp_path):
    log_file = tmp_path / "run.log"
    result = run_in_fresh_interpreter("""
        import sys
        from glaunch import cli
        from conftest import FakeProvider, gpu

        cli.discover_provider = lambda: FakeProvider([gpu(0, 1000)])
        sys.exit(cli.main(["--log", sys.argv[1], sys.executable, "-c", "print('hello from the child')"]))
    """, log_file)

    assert result.returncode == 0, result.stderr
    logged = log_file.read_text()
    for line in ("running on GPU: 0", "hello from the child", "program exited with code 0"):
        assert line in logged
        assert line in result.stdout


def test_exec_failure_reaches_log_file_and_terminal(tmp_path):
    log_file = tmp_path / "run.log"
    result = run_in_fresh_interpreter("""
        import sys
        from glaunch import cli
        from conftest import FakeProvider, gpu

        cli.discover_provider = lambda: FakeProvider([gpu(0, 1000)])
        sys.exit(cli.main(["--log", sys.argv[1], "/nonexistent/program"]))
    """, log_file)

    assert result.returncode == EXIT_EXEC_FAILED
    assert "failed to exec /nonexistent/program" in log_file.read_text()
    assert "failed to exec /nonexistent/program" in result.stdout


def test_direct_mode_replaces_glaunch_with_the_program():
    result = run_in_fresh_interpreter("""
        import os, sys
        from glaunch import cli
        from conftest import FakeProvider, gpu

        print(os.getpid(), flush=True)
        cli.discover_provider = lambda: FakeProvider([gpu(0, 1000), gpu(1, 9000)])
        code = cli.main([sys.executable, "-c",
                         "import os, sys; print(os.getpid()); "
                         "print(os.environ['CUDA_VISIBLE_DEVICES']); sys.exit(3)"])
        print("still glaunch")
        sys.exit(code)
    """)

    assert result.returncode == 3, result.stderr
    glaunch_pid, program_pid, visible = result.stdout.split()
    assert program_pid == glaunch_pid
    assert visible == "1"
    assert "still glaunch" not in result.stdout
