"""
Shared test fixtures: in-memory stand-ins for the package manager and the
shell so no test touches the host.
"""

import logging
from pathlib import Path

import pytest

from orchestration import RunContext


class FakePackageManager:
    """Records every mutating call and keeps an installed set in sync with it."""

    def __init__(self, installed=(), fail=None, candidate_versions=None):
        self.installed = set(installed)
        self.fail = dict(fail or {})
        self.candidates = dict(candidate_versions or {})
        self.calls = []

    # Queries

    def is_installed(self, package):
        return package in self.installed

    def installed_packages(self, pattern):
        prefix = pattern.rstrip("*")
        return sorted(pkg for pkg in self.installed if pkg.startswith(prefix))

    def candidate_version(self, package):
        return self.candidates.get(package)

    # Mutations

    def _mutate(self, op, *args):
        self.calls.append((op, *args))
        return self.fail.get(op, 0)

    def update_index(self):
        return self._mutate("update_index")

    def upgrade(self):
        return self._mutate("upgrade")

    def install(self, packages):
        code = self._mutate("install", tuple(packages))
        if code == 0:
            self.installed.update(packages)
        return code

    def install_local(self, deb_path):
        return self._mutate("install_local", Path(deb_path).name)

    def install_deb(self, deb_path):
        code = self._mutate("install_deb", Path(deb_path).name)
        if code == 0:
            self.installed.add(Path(deb_path).name.split("_")[0])
        return code

    def purge(self, packages):
        code = self._mutate("purge", tuple(packages))
        if code == 0:
            self.installed.difference_update(packages)
        return code

    def remove(self, packages):
        code = self._mutate("remove", tuple(packages))
        if code == 0:
            self.installed.difference_update(packages)
        return code

    def remove_unused(self):
        return self._mutate("remove_unused")

    def clean_cache(self):
        return self._mutate("clean_cache")

    def ops(self):
        return [call[0] for call in self.calls]


class FakeShell:
    """Stands in for `bash -lc`; exit codes are looked up by command string."""

    def __init__(self, codes=None):
        self.codes = dict(codes or {})
        self.commands = []

    def __call__(self, command):
        self.commands.append(command)
        return self.codes.get(command, 0)


@pytest.fixture
def fake_pm():
    return FakePackageManager()


@pytest.fixture
def fake_shell():
    return FakeShell()


@pytest.fixture
def home_dir(tmp_path):
    path = tmp_path / "home" / "kali"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def workdir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def transcript_tmpdir(tmp_path):
    path = tmp_path / "tmp"
    path.mkdir()
    return path


@pytest.fixture
def make_ctx(home_dir, workdir):
    def _make(script_name, invoking_user="kali"):
        return RunContext(
            script_name=script_name,
            is_root=True,
            invoking_user=invoking_user,
            home_dir=home_dir,
            workdir=workdir,
        )
    return _make


@pytest.fixture
def locks_free():
    """Lock waiter step that reports the locks as free."""
    return lambda: 0


@pytest.fixture
def restore_logging():
    """Drops handlers that configure_logging() attached to the root logger."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if getattr(handler, "_postinstall_handler", False):
            root.removeHandler(handler)
    root.setLevel(level)
    logging.captureWarnings(False)
