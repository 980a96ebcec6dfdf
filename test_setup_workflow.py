"""
Tests for the setup workflow: step template, failure handling, transcript
retention and the structured step actions.
"""

import logging
import os
import subprocess

import pytest

import setup_workflow
from conftest import FakePackageManager, FakeShell
from orchestration import StepFailure
from setup_workflow import (
    DOCKER_KEYRING,
    DOCKER_PACKAGES,
    DOCKER_SOURCES,
    FEATURES,
    FIREWALL_ENABLE_CMD,
    SUDOERS_PWFEEDBACK,
    VSCODIUM_KEYRING,
    SetupActions,
    build_setup_steps,
    run_setup,
)
from transcript import TranscriptRecorder

CORE_STEPS = [
    "Wait for package manager locks",
    "Remove old Docker repo entries",
    "APT update",
    "APT upgrade",
    "Install baseline packages",
    "Configure firewall defaults",
    "Enable firewall",
]
CLEANUP_STEPS = [
    "Remove unused packages",
    "Clean APT cache",
    "Clean temporary files",
    "Clean thumbnail cache",
]


class FakeRun:
    """Stands in for run_command; stdout and exit codes are looked up by argv[0]."""

    def __init__(self, codes=None, stdout=None, stderr=None):
        self.codes = dict(codes or {})
        self.stdout = {"dpkg": "amd64\n"}
        self.stdout.update(stdout or {})
        self.stderr = dict(stderr or {})
        self.commands = []

    def __call__(self, argv, description="", capture=False, **kwargs):
        self.commands.append(list(argv))
        return subprocess.CompletedProcess(
            argv, self.codes.get(argv[0], 0), self.stdout.get(argv[0], ""), self.stderr.get(argv[0], "")
        )


class FakeFetch:
    def __init__(self):
        self.urls = []

    def __call__(self, url, dest, **kwargs):
        self.urls.append(url)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_text(f"downloaded from {url}\n")
        return dest


@pytest.fixture
def fs_root(tmp_path):
    path = tmp_path / "root"
    path.mkdir()
    return path


@pytest.fixture
def setup_ctx(make_ctx):
    return make_ctx("setup")


@pytest.fixture
def make_actions(setup_ctx, fs_root):
    def _make(pm, run=None, fetch=None, release_lookup=None, which=lambda name: f"/usr/bin/{name}"):
        return SetupActions(
            setup_ctx,
            pm,
            run=run or FakeRun(),
            fetch=fetch or FakeFetch(),
            release_lookup=release_lookup or (lambda repo, matcher: "https://example.invalid/rustdesk.deb"),
            which=which,
            fs_root=fs_root,
        )
    return _make


@pytest.fixture
def recorder(workdir, transcript_tmpdir):
    return TranscriptRecorder("setup", "setup.log", workdir=workdir, tmpdir=transcript_tmpdir)


# --- Step Template ---

def step_names(steps):
    return [step.name for step in steps]


def test_default_template_has_only_core_and_cleanup_steps(make_actions, locks_free):
    pm = FakePackageManager()
    steps = build_setup_steps(frozenset(), make_actions(pm), pm, lock_waiter=locks_free)

    assert step_names(steps) == CORE_STEPS + CLEANUP_STEPS


def test_all_features_template_order(make_actions, locks_free):
    pm = FakePackageManager()
    steps = build_setup_steps(frozenset(FEATURES), make_actions(pm), pm, lock_waiter=locks_free)

    assert step_names(steps) == CORE_STEPS + [
        "Enable sudo password feedback",
        "Install Docker Engine",
        "Add Brave repository",
        "Add Mullvad repository",
        "Add VSCodium repository",
        "APT update after repository changes",
        "Install Brave browser",
        "Install Mullvad VPN",
        "Install Mullvad Browser",
        "Install RustDesk",
        "Install VSCodium",
    ] + CLEANUP_STEPS


def test_rustdesk_alone_adds_no_repository_refresh(make_actions, locks_free):
    pm = FakePackageManager()
    names = step_names(build_setup_steps(frozenset({"rustdesk"}), make_actions(pm), pm, lock_waiter=locks_free))

    assert "APT update after repository changes" not in names
    assert "Install RustDesk" in names


# --- Whole Runs ---

def test_clean_run_leaves_no_log(setup_ctx, make_actions, recorder, locks_free, workdir):
    pm = FakePackageManager()
    shell = FakeShell()

    ledger, saved = run_setup(setup_ctx, frozenset(), False, pm, actions=make_actions(pm),
                              shell=shell, lock_waiter=locks_free, recorder=recorder)

    assert ledger.is_clean()
    assert saved is None
    assert not (workdir / "setup.log").exists()
    assert pm.ops() == ["update_index", "upgrade", "install", "remove_unused", "clean_cache"]
    assert shell.commands[-1] == "systemd-tmpfiles --clean"


def test_firewall_failure_is_recorded_and_run_continues(setup_ctx, make_actions, recorder, locks_free, workdir, capsys):
    pm = FakePackageManager()
    shell = FakeShell({FIREWALL_ENABLE_CMD: 1})

    ledger, saved = run_setup(setup_ctx, frozenset(), False, pm, actions=make_actions(pm),
                              shell=shell, lock_waiter=locks_free, recorder=recorder)

    assert ledger.entries == [("Enable firewall", 1)]
    assert "clean_cache" in pm.ops()
    assert saved == workdir / "setup.log"
    log = saved.read_text()
    assert "Enable firewall" in log
    assert "1) Enable firewall (exit 1)" in capsys.readouterr().out


def test_failures_listed_in_execution_order(setup_ctx, make_actions, recorder, locks_free):
    pm = FakePackageManager(fail={"update_index": 100, "clean_cache": 1})

    ledger, _ = run_setup(setup_ctx, frozenset(), False, pm, actions=make_actions(pm),
                          shell=FakeShell(), lock_waiter=locks_free, recorder=recorder)

    assert ledger.entries == [("APT update", 100), ("Clean APT cache", 1)]


def test_keep_log_retains_clean_transcript(setup_ctx, make_actions, recorder, locks_free, workdir):
    pm = FakePackageManager()

    _, saved = run_setup(setup_ctx, frozenset(), True, pm, actions=make_actions(pm),
                         shell=FakeShell(), lock_waiter=locks_free, recorder=recorder)

    assert saved == workdir / "setup.log"
    assert "Finished successfully" in saved.read_text()


def test_lock_timeout_is_a_failed_step(setup_ctx, make_actions, recorder):
    pm = FakePackageManager()

    ledger, _ = run_setup(setup_ctx, frozenset(), False, pm, actions=make_actions(pm),
                          shell=FakeShell(), lock_waiter=lambda: 1, recorder=recorder)

    assert ledger.entries == [("Wait for package manager locks", 1)]
    assert "update_index" in pm.ops()


# --- Step Actions ---

def test_pwfeedback_dropin_written_read_only(make_actions, fs_root):
    run = FakeRun()
    actions = make_actions(FakePackageManager(), run=run)

    assert actions.enable_pwfeedback() == 0

    dest = fs_root / SUDOERS_PWFEEDBACK.relative_to("/")
    assert dest.read_text() == "Defaults pwfeedback\n"
    assert os.stat(dest).st_mode & 0o777 == 0o440
    assert run.commands[0][:2] == ["visudo", "-cf"]


def test_pwfeedback_rejected_by_visudo_installs_nothing(make_actions, fs_root):
    actions = make_actions(FakePackageManager(), run=FakeRun({"visudo": 1}))

    with pytest.raises(StepFailure):
        actions.enable_pwfeedback()
    assert not (fs_root / SUDOERS_PWFEEDBACK.relative_to("/")).exists()


def test_stale_docker_sources_removed(make_actions, fs_root):
    sources = fs_root / "etc/apt/sources.list.d"
    sources.mkdir(parents=True)
    (sources / "docker.list").write_text("deb https://download.docker.com/linux/debian kali-rolling stable\n")
    (sources / "docker-mirror.list").write_text("deb https://mirror.example.org/docker stable main\n")
    (sources / "brave-browser-release.sources").write_text("URIs: https://download.docker.com\n")

    make_actions(FakePackageManager()).purge_docker_repo_entries()

    assert sorted(p.name for p in sources.iterdir()) == ["brave-browser-release.sources", "docker-mirror.list"]


@pytest.mark.parametrize(
    "libc, suite",
    [("2.42-4", "trixie"), ("2.36-9+deb12u9", "bookworm"), ("2.31-13", None), (None, None)],
)
def test_docker_suite_from_libc(make_actions, libc, suite):
    pm = FakePackageManager(candidate_versions={"libc6": libc} if libc else None)
    assert make_actions(pm).docker_suite() == suite


class FlakyIndexPackageManager(FakePackageManager):
    """update_index returns the queued codes in order, then 0."""

    def __init__(self, index_codes, **kwargs):
        super().__init__(**kwargs)
        self.index_codes = list(index_codes)

    def update_index(self):
        self.calls.append(("update_index",))
        return self.index_codes.pop(0) if self.index_codes else 0


def test_docker_falls_back_to_other_suite(make_actions, fs_root):
    # write_docker_repo refreshes once, then the suite check refreshes again.
    pm = FlakyIndexPackageManager([0, 100], candidate_versions={"libc6": "2.42-4"}, installed={"docker.io"})
    run = FakeRun()
    actions = make_actions(pm, run=run)

    assert actions.install_docker() == 0

    sources = (fs_root / DOCKER_SOURCES.relative_to("/")).read_text()
    assert "Suites: bookworm" in sources
    assert ("remove", ("docker.io",)) in pm.calls
    assert ("install", tuple(DOCKER_PACKAGES)) in pm.calls
    assert ["usermod", "-aG", "docker", "kali"] in run.commands
    assert actions.docker_ok


def test_docker_gives_up_after_both_suites_fail(make_actions, fs_root):
    pm = FlakyIndexPackageManager([0, 100, 0, 100], candidate_versions={"libc6": "2.42-4"})
    actions = make_actions(pm)

    assert actions.install_docker() == 1
    assert not (fs_root / DOCKER_SOURCES.relative_to("/")).exists()
    assert not actions.docker_ok


def test_docker_unknown_suite_is_skipped(make_actions):
    pm = FakePackageManager(candidate_versions={"libc6": "2.31-13"})

    assert make_actions(pm).install_docker() == 1
    assert "install" not in pm.ops()


def test_rustdesk_unsupported_architecture(make_actions):
    pm = FakePackageManager()
    actions = make_actions(pm, run=FakeRun(stdout={"dpkg": "i386\n"}))

    with pytest.raises(StepFailure, match="unsupported architecture 'i386'"):
        actions.install_rustdesk()
    assert pm.calls == []


def test_rustdesk_installs_downloaded_deb(make_actions):
    pm = FakePackageManager()
    seen = []

    def lookup(repo, matcher):
        seen.append(matcher("rustdesk-1.3.9-x86_64.deb"))
        seen.append(matcher("rustdesk-1.3.9-aarch64.deb"))
        return "https://example.invalid/rustdesk-1.3.9-x86_64.deb"

    assert make_actions(pm, release_lookup=lookup).install_rustdesk() == 0
    assert seen == [True, False]
    assert pm.calls == [("install_local", "rustdesk.deb")]


def test_thumbnail_cache_cleared(make_actions, home_dir):
    thumbs = home_dir / ".cache" / "thumbnails" / "normal"
    thumbs.mkdir(parents=True)
    (thumbs / "a.png").write_text("png")

    assert make_actions(FakePackageManager()).cleanup_thumbnails() == 0
    assert not (home_dir / ".cache" / "thumbnails").exists()


def test_docker_group_note_only_after_successful_install(setup_ctx, make_actions, recorder, locks_free, caplog):
    caplog.set_level(logging.INFO)
    pm = FakePackageManager(candidate_versions={"libc6": "2.42-4"})

    run_setup(setup_ctx, frozenset({"docker"}), False, pm, actions=make_actions(pm),
              shell=FakeShell(), lock_waiter=locks_free, recorder=recorder)

    assert "Log out and back in (or reboot) to use docker without sudo (user: kali)" in caplog.text


def test_no_docker_group_note_when_install_fails(setup_ctx, make_actions, recorder, locks_free, caplog):
    caplog.set_level(logging.INFO)
    pm = FakePackageManager(candidate_versions={"libc6": "2.31-13"})

    ledger, _ = run_setup(setup_ctx, frozenset({"docker"}), False, pm, actions=make_actions(pm),
                          shell=FakeShell(), lock_waiter=locks_free, recorder=recorder)

    assert ledger.entries == [("Install Docker Engine", 1)]
    assert "Log out and back in" not in caplog.text


def test_docker_repo_files_removed_on_unexpected_error(make_actions, fs_root):
    def fetch_then_fail(url, dest, **kwargs):
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_text("partial key")
        raise OSError("No space left on device")

    pm = FakePackageManager(candidate_versions={"libc6": "2.42-4"})
    actions = make_actions(pm, fetch=fetch_then_fail)

    with pytest.raises(OSError):
        actions.install_docker()
    assert not (fs_root / DOCKER_KEYRING.relative_to("/")).exists()
    assert not (fs_root / DOCKER_SOURCES.relative_to("/")).exists()


def test_gpg_dearmor_reason_is_logged(make_actions, fs_root, caplog):
    run = FakeRun({"gpg": 2}, stderr={"gpg": "gpg: no valid OpenPGP data found.\n"})
    actions = make_actions(FakePackageManager(), run=run)

    with pytest.raises(StepFailure):
        actions.add_vscodium_repo()

    errors = [r.getMessage() for r in caplog.records if r.levelno >= logging.ERROR]
    assert any("no valid OpenPGP data found" in message for message in errors)
    assert not (fs_root / VSCODIUM_KEYRING.relative_to("/")).exists()


# --- Command Line ---

def test_main_refuses_non_root(monkeypatch, capsys):
    monkeypatch.setattr("orchestration.os.geteuid", lambda: 1000)

    assert setup_workflow.main([]) == 1
    assert "must be run as root" in capsys.readouterr().out


def test_main_rejects_unknown_flag(monkeypatch):
    monkeypatch.setattr("orchestration.os.geteuid", lambda: 0)

    with pytest.raises(SystemExit) as exc:
        setup_workflow.main(["--bogus"])
    assert exc.value.code == 2


def test_main_interrupt_exits_130(monkeypatch, restore_logging):
    monkeypatch.setattr("orchestration.os.geteuid", lambda: 0)

    def interrupted(*args, **kwargs):
        raise KeyboardInterrupt

    monkeypatch.setattr(setup_workflow, "run_setup", interrupted)

    assert setup_workflow.main(["--brave"]) == 130


def test_flags_select_features():
    args = setup_workflow.build_parser().parse_args(["--brave", "--docker", "--log"])

    assert setup_workflow.enabled_features(args) == {"brave", "docker"}
    assert args.log


@pytest.fixture
def root_main(monkeypatch, setup_ctx, make_actions, restore_logging):
    """Runs main() as root with every host collaborator replaced."""
    pm = FakePackageManager()
    monkeypatch.setattr(setup_workflow.RunContext, "detect", classmethod(lambda cls, name, environ=None: setup_ctx))
    monkeypatch.setattr(setup_workflow, "AptPackageManager", lambda: pm)
    monkeypatch.setattr(setup_workflow, "SetupActions", lambda ctx, pm: make_actions(pm))
    monkeypatch.setattr(setup_workflow, "lock_wait_step", lambda: 0)

    def _run(argv, shell):
        monkeypatch.setattr(setup_workflow, "run_shell", shell)
        return setup_workflow.main(argv)
    return _run


def test_main_exits_zero_despite_failed_step(root_main, workdir):
    assert root_main([], FakeShell({FIREWALL_ENABLE_CMD: 1})) == 0

    log = (workdir / "setup.log").read_text()
    assert "1) Enable firewall (exit 1)" in log


def test_main_exits_zero_on_clean_run(root_main, workdir):
    assert root_main([], FakeShell()) == 0
    assert not (workdir / "setup.log").exists()
