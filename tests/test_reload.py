"""
Tests for live reload (fpf/reload.py).
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from fpf.config import Settings
from fpf.dispatch import Dispatcher
from fpf.models import ConfigError, FpfError
from fpf.reload import (
    AWAITING_RELOAD,
    FALLBACK_SERVED,
    IDLE,
    SERVED,
    TRANSPORT_IPC,
    TRANSPORT_SYNC,
    IpcNotifier,
    ReloadController,
    ReloadSession,
    build_notify_command,
    build_reload_command,
    choose_transport,
    parse_listen_address,
    reload_action,
    resolve_reload_backends,
)

BASELINE = "apt\tjq\t  json\n"

APT_BINARIES = ("apt-cache", "apt-get", "dpkg-query")


def make_ready(paths, *backends):
    for backend in backends:
        binaries = APT_BINARIES if backend == "apt" else (backend,)
        for binary in binaries:
            paths[binary] = f"/usr/bin/{binary}"


@pytest.fixture
def baseline(tmp_path):
    path = tmp_path / "reload-fallback.tsv"
    path.write_text(BASELINE)
    return path


@pytest.fixture
def controller_for(make_store, registry, probe, baseline):
    """Build a controller with fake adapters and a recorded debounce."""
    def factory(*adapters, **overrides):
        fields = {
            "ipc_fallback_file": str(baseline),
            "bypass_query_cache": True,
            "skip_query_cache_write": True,
        }
        fields.update(overrides)
        settings = Settings(**fields)
        dispatcher = Dispatcher(make_store(settings), registry(*adapters), settings)
        sleeps = []
        controller = ReloadController(settings, dispatcher, probe, sleep=sleeps.append)
        controller.sleeps = sleeps
        return controller
    return factory


class TestReloadController:
    """Tests for the --dynamic-reload request handler."""

    def test_starts_idle(self, controller_for):
        """Test a fresh controller is idle."""
        assert controller_for().state == IDLE

    def test_short_query_serves_baseline(self, controller_for, fake_adapter, paths):
        """Test queries below the minimum return the baseline and call nothing."""
        make_ready(paths, "apt")
        adapter = fake_adapter("apt", rows=[("jq", "-")])
        controller = controller_for(adapter, ipc_manager_list="apt")
        assert controller.handle("j") == BASELINE
        assert controller.state == FALLBACK_SERVED
        assert adapter.search_calls == []
        assert controller.sleeps == []

    def test_missing_fallback_file(self, controller_for):
        """Test a session without a fallback file is a configuration error."""
        controller = controller_for(ipc_fallback_file="")
        with pytest.raises(ConfigError):
            controller.handle("ripgrep")

    def test_nonexistent_fallback_file(self, controller_for, tmp_path):
        """Test a fallback path that does not exist is a configuration error."""
        controller = controller_for(ipc_fallback_file=str(tmp_path / "gone.tsv"))
        with pytest.raises(ConfigError):
            controller.handle("ripgrep")

    def test_served(self, controller_for, fake_adapter, paths):
        """Test a successful reload serves ranked rows without markers."""
        make_ready(paths, "apt")
        adapter = fake_adapter("apt", rows=[("ripgrep-all", "-"), ("ripgrep", "fast grep")], installed=["ripgrep"])
        controller = controller_for(adapter, ipc_manager_list="apt")
        output = controller.handle("ripgrep")
        assert output == "apt\tripgrep\t  fast grep\napt\tripgrep-all\t  -\n"
        assert controller.state == SERVED
        assert adapter.installed_calls == 0
        assert controller.sleeps == [0.12]

    def test_unready_member_serves_baseline(self, controller_for, fake_adapter, paths):
        """Test one unready listed backend fails the whole reload."""
        make_ready(paths, "apt")
        apt = fake_adapter("apt", rows=[("jq", "-")])
        npm = fake_adapter("npm", rows=[("jq", "-")])
        controller = controller_for(apt, npm, ipc_manager_list="apt,npm")
        assert controller.handle("jq") == BASELINE
        assert controller.state == FALLBACK_SERVED
        assert apt.search_calls == []

    def test_unsupported_override_serves_baseline(self, controller_for):
        """Test an unknown override backend serves the baseline."""
        controller = controller_for(ipc_manager_override="nope")
        assert controller.handle("jq") == BASELINE

    def test_empty_result_serves_baseline(self, controller_for, fake_adapter, paths):
        """Test an empty reload never blanks the list."""
        make_ready(paths, "apt")
        controller = controller_for(fake_adapter("apt"), ipc_manager_list="apt")
        assert controller.handle("zzzz") == BASELINE
        assert controller.state == FALLBACK_SERVED

    def test_failed_backends_serve_baseline(self, controller_for, fake_adapter, paths):
        """Test every backend failing serves the baseline."""
        make_ready(paths, "apt")
        adapter = fake_adapter("apt", error=FpfError("boom"))
        controller = controller_for(adapter, ipc_manager_list="apt")
        assert controller.handle("jq") == BASELINE

    def test_no_debounce(self, controller_for, fake_adapter, paths):
        """Test debounce 0 never sleeps."""
        make_ready(paths, "apt")
        controller = controller_for(fake_adapter("apt", rows=[("jq", "-")]), ipc_manager_list="apt", reload_debounce=0)
        controller.handle("jq")
        assert controller.sleeps == []

    def test_override_beats_list(self, controller_for, fake_adapter, paths):
        """Test the manager override limits the reload to one backend."""
        make_ready(paths, "apt", "npm")
        apt = fake_adapter("apt", rows=[("jq", "-")])
        npm = fake_adapter("npm", rows=[("jq", "-")])
        controller = controller_for(apt, npm, ipc_manager_override="npm", ipc_manager_list="apt,npm")
        assert controller.handle("jq") == "npm\tjq\t  -\n"
        assert apt.search_calls == []

    def test_awaiting_state_during_search(self, controller_for, fake_adapter, paths):
        """Test the controller waits in the awaiting state while backends run."""
        make_ready(paths, "apt")
        seen = []
        adapter = fake_adapter("apt", rows=[("jq", "-")])
        controller = controller_for(adapter, ipc_manager_list="apt")
        controller.sleep = lambda seconds: seen.append(controller.state)
        controller.handle("jq")
        assert seen == [AWAITING_RELOAD]


class TestResolveReloadBackends:
    """Tests for session backend resolution."""

    def test_empty_session(self, probe):
        """Test no override or list means auto-detect."""
        assert resolve_reload_backends(Settings(), probe) == []

    def test_aliases_and_duplicates(self, probe, paths):
        """Test listed names are normalized and deduplicated."""
        make_ready(paths, "brew")
        settings = Settings(ipc_manager_list="Homebrew, brew")
        assert resolve_reload_backends(settings, probe) == ["brew"]

    def test_unready_override(self, probe):
        """Test an unready override fails."""
        assert resolve_reload_backends(Settings(ipc_manager_override="apt"), probe) is None


class TestCommands:
    """Tests for generated selector commands."""

    def test_reload_command_placeholder(self):
        """Test the sync reload command defers the query to the selector."""
        command = build_reload_command("/usr/bin/fpf", "", "/tmp/fb.tsv", "apt,npm")
        assert command == (
            "FPF_SKIP_INSTALLED_MARKERS=1 FPF_BYPASS_QUERY_CACHE=1 FPF_SKIP_QUERY_CACHE_WRITE=1 "
            "FPF_IPC_MANAGER_OVERRIDE='' FPF_IPC_MANAGER_LIST=apt,npm FPF_IPC_FALLBACK_FILE=/tmp/fb.tsv "
            "'/usr/bin/fpf' --dynamic-reload -- \"{q}\""
        )

    def test_reload_command_concrete_query(self):
        """Test a pushed reload quotes every value and the query."""
        command = build_reload_command("fpf", "apt", "/tmp/fb.tsv", "apt", bypass_cache=False, query="it's")
        assert "FPF_BYPASS_QUERY_CACHE=0" in command
        assert "FPF_IPC_MANAGER_OVERRIDE='apt'" in command
        assert command.endswith("--dynamic-reload -- 'it'\\''s'")

    def test_notify_command(self):
        """Test the notify command carries the session variables."""
        command = build_notify_command("fpf", "", "/tmp/my fb.tsv", "apt")
        assert command == (
            "FPF_IPC_MANAGER_OVERRIDE='' FPF_IPC_MANAGER_LIST=apt "
            "FPF_IPC_FALLBACK_FILE='/tmp/my fb.tsv' 'fpf' --ipc-query-notify -- \"{q}\""
        )

    def test_reload_action(self):
        """Test the pushed action resets the prompt and reloads."""
        assert reload_action("cmd") == "change-prompt(Search> )+reload(cmd)"


class TestTransport:
    """Tests for transport selection and the listen address."""

    def test_sync_by_default(self):
        """Test sync is used unless ipc is requested."""
        assert choose_transport(Settings(), lambda: True) == TRANSPORT_SYNC

    def test_ipc_requires_listen_support(self):
        """Test ipc falls back to sync when the selector cannot listen."""
        settings = Settings(dynamic_reload_transport="ipc")
        assert choose_transport(settings, lambda: True) == TRANSPORT_IPC
        assert choose_transport(settings, lambda: False) == TRANSPORT_SYNC

    def test_parse_listen_address(self):
        """Test bare ports default to localhost."""
        assert parse_listen_address("6266") == ("127.0.0.1", "6266")
        assert parse_listen_address("localhost:7000") == ("localhost", "7000")
        assert parse_listen_address(":7000") == ("127.0.0.1", "7000")

    def test_missing_port(self):
        """Test an empty FZF_PORT is a configuration error."""
        with pytest.raises(ConfigError):
            parse_listen_address("  ")


class TestIpcNotifier:
    """Tests for pushing reload actions."""

    def test_notify_posts_reload(self, monkeypatch, baseline):
        """Test notify pushes a reload action for the current query."""
        pushed = []
        monkeypatch.setattr("fpf.reload.push_action", lambda payload, port: pushed.append((payload, port)))
        settings = Settings(ipc_fallback_file=str(baseline), ipc_manager_list="apt", fzf_port="6266")
        with IpcNotifier(settings, argv0="fpf") as notifier:
            notifier.notify("ripgrep").result(timeout=5)
        payload, port = pushed[0]
        assert port == "6266"
        assert payload.startswith("change-prompt(Search> )+reload(FPF_SKIP_INSTALLED_MARKERS=1 ")
        assert payload.endswith("--dynamic-reload -- 'ripgrep')")

    def test_push_failure_surfaces(self, monkeypatch, baseline):
        """Test push errors are raised through the future."""
        def fail(payload, port):
            raise FpfError("unreachable")

        monkeypatch.setattr("fpf.reload.push_action", fail)
        settings = Settings(ipc_fallback_file=str(baseline), fzf_port="6266")
        with ThreadPoolExecutor(max_workers=1) as executor:
            future = IpcNotifier(settings, argv0="fpf", executor=executor).notify("jq")
            with pytest.raises(FpfError):
                future.result(timeout=5)

    def test_missing_fallback(self):
        """Test notify refuses to run without a session fallback."""
        with IpcNotifier(Settings(), argv0="fpf") as notifier:
            with pytest.raises(ConfigError):
                notifier.notify("jq")


class TestReloadSession:
    """Tests for session directory ownership."""

    def test_owned_directory_removed(self, monkeypatch, tmp_path):
        """Test a created session directory is removed on close."""
        monkeypatch.setattr("fpf.reload.tempfile.gettempdir", lambda: str(tmp_path))
        with ReloadSession.create(Settings(), ["apt", "npm"]) as session:
            directory = session.directory
            assert directory.parent == tmp_path / "fpf"
            assert directory.name.startswith("session.")
            assert session.manager_list == "apt,npm"
            assert session.fallback_file == session.display_file
        assert not directory.exists()

    def test_external_directory_kept(self, tmp_path):
        """Test an externally managed directory survives close."""
        root = tmp_path / "external"
        with ReloadSession.create(Settings(session_tmp_root=str(root))) as session:
            session.display_file.write_text(BASELINE)
        assert (root / "display.tsv").exists()

    def test_file_names(self, tmp_path):
        """Test session file layout."""
        session = ReloadSession(tmp_path, owns_directory=False)
        assert session.display_file == tmp_path / "display.tsv"
        assert session.baseline_file == tmp_path / "reload-fallback.tsv"
        assert session.help_file == tmp_path / "help"
        assert session.keybind_file == tmp_path / "keybinds"
