#!/usr/bin/env python3

"""
Post-install setup: updates the system, installs the baseline tools, turns on
the firewall and optionally adds third-party applications.

Every step runs even when an earlier one failed; failed steps are listed at
the end and setup.log is kept whenever something failed or --log was given.
"""

import argparse
import logging
import os
import shutil
import sys
import tempfile
from functools import partial
from pathlib import Path

from rich.text import Text

import remote_fetch
from apt_locks import lock_wait_step
from orchestration import (
    FailureLedger,
    PrivilegeError,
    RunContext,
    Step,
    StepFailure,
    StepRunner,
    configure_logging,
    console,
    disk_free_bytes,
    format_bytes,
    print_summary,
    run_shell,
)
from package_manager import AptPackageManager, current_architecture, run_command, write_file
from transcript import TranscriptRecorder

logger = logging.getLogger(__name__)

# --- Configuration ---
SCRIPT_NAME = "setup"
LOG_NAME = "setup.log"

EXIT_OK = 0
EXIT_PRIVILEGE = 1
EXIT_INTERRUPTED = 130

BASELINE_PACKAGES = [
    "curl", "wget", "git", "vlc",
    "ca-certificates", "gnupg", "software-properties-common",
    "btop", "net-tools", "ufw",
    "zip", "unzip", "p7zip-full",
    "vim", "timeshift",
]

FIREWALL_DEFAULTS_CMD = "ufw default deny incoming && ufw default allow outgoing"
FIREWALL_ENABLE_CMD = "ufw --force enable"

SUDOERS_PWFEEDBACK = Path("/etc/sudoers.d/setup-pwfeedback")
SUDOERS_PWFEEDBACK_LINE = "Defaults pwfeedback\n"

USR_KEYRINGS = Path("/usr/share/keyrings")
APT_KEYRINGS = Path("/etc/apt/keyrings")
APT_SOURCES_DIR = Path("/etc/apt/sources.list.d")

BRAVE_KEY_URL = "https://brave-browser-apt-release.s3.brave.com/brave-browser-archive-keyring.gpg"
BRAVE_SOURCES_URL = "https://brave-browser-apt-release.s3.brave.com/brave-browser.sources"
BRAVE_KEYRING = USR_KEYRINGS / "brave-browser-archive-keyring.gpg"
BRAVE_SOURCES = APT_SOURCES_DIR / "brave-browser-release.sources"

MULLVAD_KEY_URL = "https://repository.mullvad.net/deb/mullvad-keyring.asc"
MULLVAD_KEYRING = USR_KEYRINGS / "mullvad-keyring.asc"
MULLVAD_SOURCES = APT_SOURCES_DIR / "mullvad.list"

VSCODIUM_KEY_URL = "https://gitlab.com/paulcarroty/vscodium-deb-rpm-repo/raw/master/pub.gpg"
VSCODIUM_KEYRING = USR_KEYRINGS / "vscodium-archive-keyring.gpg"
VSCODIUM_SOURCES = APT_SOURCES_DIR / "vscodium.sources"

RUSTDESK_REPO = "rustdesk/rustdesk"
RUSTDESK_ASSET_SUFFIXES = {"amd64": "x86_64.deb", "arm64": "aarch64.deb"}

DOCKER_KEY_URL = "https://download.docker.com/linux/debian/gpg"
DOCKER_KEYRING = APT_KEYRINGS / "docker.asc"
DOCKER_SOURCES = APT_SOURCES_DIR / "docker.sources"
DOCKER_REPO_HOST = "download.docker.com"
# Kali reports kali-rolling, which Docker's Debian repository does not serve;
# the base suite is inferred from the libc6 upstream version instead.
DOCKER_SUITES_BY_LIBC = {"2.42": "trixie", "2.36": "bookworm"}
DOCKER_CONFLICTING_PACKAGES = ["docker.io", "docker-compose", "docker-doc", "podman-docker", "containerd", "runc"]
DOCKER_PACKAGES = ["docker-ce", "docker-ce-cli", "containerd.io", "docker-buildx-plugin", "docker-compose-plugin"]

THUMBNAIL_DIRS = (".cache/thumbnails", ".thumbnails")

# Optional features, one command line flag each.
FEATURE_PWFEEDBACK = "pwfeedback"
FEATURE_BRAVE = "brave"
FEATURE_MULLVAD = "mullvad"
FEATURE_RUSTDESK = "rustdesk"
FEATURE_VSCODIUM = "vscodium"
FEATURE_DOCKER = "docker"
FEATURES = (FEATURE_PWFEEDBACK, FEATURE_BRAVE, FEATURE_MULLVAD, FEATURE_RUSTDESK, FEATURE_VSCODIUM, FEATURE_DOCKER)


# --- Step Actions ---

class SetupActions:
    """
    The structured (in-process) setup steps. Filesystem paths are resolved
    under `fs_root`, which is / outside of tests.
    """

    def __init__(self, ctx, pm, run=run_command, fetch=remote_fetch.fetch,
                 release_lookup=remote_fetch.latest_release_asset_url, which=shutil.which, fs_root=Path("/")):
        self.ctx = ctx
        self.pm = pm
        self.run = run
        self.fetch = fetch
        self.release_lookup = release_lookup
        self.which = which
        self.fs_root = Path(fs_root)
        self.docker_ok = False

    def path(self, absolute):
        return self.fs_root / Path(absolute).relative_to("/")

    # sudo password feedback

    def enable_pwfeedback(self):
        """Installs a sudoers drop-in with `Defaults pwfeedback`, validated by visudo first."""
        dest = self.path(SUDOERS_PWFEEDBACK)
        fd, tmp = tempfile.mkstemp(prefix=f"{self.ctx.script_name}.sudoers.")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(SUDOERS_PWFEEDBACK_LINE)

            if self.which("visudo"):
                check = self.run(["visudo", "-cf", tmp], description="Validating sudoers drop-in", capture=True)
                if check.returncode != 0:
                    raise StepFailure("visudo rejected the sudoers drop-in", check.returncode)

            dest.parent.mkdir(parents=True, exist_ok=True)
            staged = dest.with_name(f".{dest.name}.new")
            shutil.copyfile(tmp, staged)
            os.chmod(staged, 0o440)
            os.replace(staged, dest)
        finally:
            os.unlink(tmp)
        logger.info(f"Installed {dest}")
        return 0

    # Third-party repositories

    def add_brave_repo(self):
        self.fetch(BRAVE_KEY_URL, self.path(BRAVE_KEYRING))
        self.fetch(BRAVE_SOURCES_URL, self.path(BRAVE_SOURCES))
        return 0

    def add_mullvad_repo(self):
        self.fetch(MULLVAD_KEY_URL, self.path(MULLVAD_KEYRING))
        arch = current_architecture(self.run)
        repo_line = (
            f"deb [signed-by={MULLVAD_KEYRING} arch={arch}] "
            "https://repository.mullvad.net/deb/stable stable main\n"
        )
        return write_file(self.path(MULLVAD_SOURCES), repo_line, permissions=0o644, show_content=True)

    def add_vscodium_repo(self):
        keyring = self.path(VSCODIUM_KEYRING)
        keyring.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix=f"{self.ctx.script_name}.vscodium.") as tmpdir:
            armored = self.fetch(VSCODIUM_KEY_URL, Path(tmpdir) / "pub.gpg")
            dearmor = self.run(
                ["gpg", "--batch", "--yes", "--dearmor", "-o", str(keyring), str(armored)],
                description="Converting VSCodium signing key",
                capture=True,
            )
            if dearmor.returncode != 0:
                reason = (dearmor.stderr or "").strip() or "no error output"
                logger.error(f"gpg --dearmor: {reason}")
                keyring.unlink(missing_ok=True)
                raise StepFailure("gpg --dearmor failed for the VSCodium key", dearmor.returncode)

        sources = (
            "Types: deb\n"
            "URIs: https://download.vscodium.com/debs\n"
            "Suites: vscodium\n"
            "Components: main\n"
            "Architectures: amd64 arm64\n"
            f"Signed-by: {VSCODIUM_KEYRING}\n"
        )
        return write_file(self.path(VSCODIUM_SOURCES), sources, permissions=0o644, show_content=True)

    # RustDesk (GitHub release .deb)

    def install_rustdesk(self):
        arch = current_architecture(self.run)
        suffix = RUSTDESK_ASSET_SUFFIXES.get(arch)
        if suffix is None:
            supported = ", ".join(RUSTDESK_ASSET_SUFFIXES)
            raise StepFailure(f"RustDesk install skipped: unsupported architecture '{arch}' (supported: {supported}).")

        url = self.release_lookup(
            RUSTDESK_REPO,
            lambda name: name.startswith("rustdesk-") and name.endswith(suffix),
        )
        with tempfile.TemporaryDirectory(prefix=f"{self.ctx.script_name}.rustdesk.") as tmpdir:
            deb_path = self.fetch(url, Path(tmpdir) / "rustdesk.deb")
            return self.pm.install_local(deb_path)

    # Docker Engine

    def purge_docker_repo_entries(self):
        """Deletes source files pointing at Docker's repository so a stale suite cannot break apt."""
        sources_dir = self.path(APT_SOURCES_DIR)
        candidates = set(sources_dir.glob("*docker*")) | set(sources_dir.glob("*Docker*"))
        for source in sorted(candidates):
            if not source.is_file():
                continue
            if DOCKER_REPO_HOST in source.read_text(errors="ignore").lower():
                source.unlink()
                logger.info(f"Removed stale Docker source {source}")
        return 0

    def docker_suite(self):
        """trixie or bookworm, from the libc6 candidate version; None if neither."""
        version = self.pm.candidate_version("libc6")
        if not version:
            return None
        return DOCKER_SUITES_BY_LIBC.get(version.split("-")[0])

    def remove_docker_repo_files(self):
        self.path(DOCKER_SOURCES).unlink(missing_ok=True)
        self.path(DOCKER_KEYRING).unlink(missing_ok=True)

    def write_docker_repo(self, suite):
        code = self.pm.update_index()
        if code != 0:
            return code
        code = self.pm.install(["ca-certificates", "curl"])
        if code != 0:
            return code

        keyring = self.path(DOCKER_KEYRING)
        keyring.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
        self.fetch(DOCKER_KEY_URL, keyring)
        os.chmod(keyring, 0o644)

        sources = (
            "Types: deb\n"
            "URIs: https://download.docker.com/linux/debian\n"
            f"Suites: {suite}\n"
            "Components: stable\n"
            f"Signed-By: {DOCKER_KEYRING}\n"
        )
        return 0 if write_file(self.path(DOCKER_SOURCES), sources, permissions=0o644, show_content=True) else 1

    def install_docker(self):
        self.docker_ok = False
        self.purge_docker_repo_entries()

        suite = self.docker_suite()
        if suite is None:
            logger.error("Docker install: unable to infer Debian base suite (expected trixie or bookworm).")
            logger.error("Docker install skipped.")
            return 1

        conflicting = [pkg for pkg in DOCKER_CONFLICTING_PACKAGES if self.pm.is_installed(pkg)]
        if conflicting:
            self.pm.remove(conflicting)

        try:
            code = self.write_docker_repo(suite)
            if code != 0:
                self.remove_docker_repo_files()
                return code

            if self.pm.update_index() != 0:
                alt = "bookworm" if suite == "trixie" else "trixie"
                logger.warning(f"Docker repo suite '{suite}' failed. Trying '{alt}' once...")
                self.remove_docker_repo_files()
                code = self.write_docker_repo(alt)
                if code != 0:
                    self.remove_docker_repo_files()
                    return code
                if self.pm.update_index() != 0:
                    logger.error("Docker repo setup failed for both trixie and bookworm.")
                    self.remove_docker_repo_files()
                    return 1

            code = self.pm.install(DOCKER_PACKAGES)
            if code != 0:
                self.remove_docker_repo_files()
                return code
        except Exception:
            self.remove_docker_repo_files()
            raise

        user = self.ctx.invoking_user
        if user:
            code = self.run(["usermod", "-aG", "docker", user], description=f"Adding {user} to the docker group").returncode
            if code != 0:
                return code
        else:
            logger.info("Docker installed. Skipping docker group change because no non-root invoking user was detected.")
        self.docker_ok = True
        return 0

    # Cleanup

    def cleanup_thumbnails(self):
        home = self.ctx.home_dir
        if home is None or not Path(home).is_dir():
            return 0
        for rel in THUMBNAIL_DIRS:
            shutil.rmtree(Path(home) / rel, ignore_errors=True)
        return 0


# --- Step Template ---

def build_setup_steps(features, actions, pm, lock_waiter=lock_wait_step):
    """The fixed setup sequence; `features` only decides which optional steps are present."""
    steps = [
        Step("Wait for package manager locks", lock_waiter),
        Step("Remove old Docker repo entries", actions.purge_docker_repo_entries),
        Step("APT update", pm.update_index),
        Step("APT upgrade", pm.upgrade),
        Step("Install baseline packages", partial(pm.install, BASELINE_PACKAGES)),
        Step("Configure firewall defaults", FIREWALL_DEFAULTS_CMD),
        Step("Enable firewall", FIREWALL_ENABLE_CMD),
    ]

    if FEATURE_PWFEEDBACK in features:
        steps.append(Step("Enable sudo password feedback", actions.enable_pwfeedback))
    if FEATURE_DOCKER in features:
        steps.append(Step("Install Docker Engine", actions.install_docker))

    repo_steps = []
    if FEATURE_BRAVE in features:
        repo_steps.append(Step("Add Brave repository", actions.add_brave_repo))
    if FEATURE_MULLVAD in features:
        repo_steps.append(Step("Add Mullvad repository", actions.add_mullvad_repo))
    if FEATURE_VSCODIUM in features:
        repo_steps.append(Step("Add VSCodium repository", actions.add_vscodium_repo))
    steps.extend(repo_steps)
    if repo_steps:
        steps.append(Step("APT update after repository changes", pm.update_index))

    if FEATURE_BRAVE in features:
        steps.append(Step("Install Brave browser", partial(pm.install, ["brave-browser"])))
    if FEATURE_MULLVAD in features:
        steps.append(Step("Install Mullvad VPN", partial(pm.install, ["mullvad-vpn"])))
        steps.append(Step("Install Mullvad Browser", partial(pm.install, ["mullvad-browser"])))
    if FEATURE_RUSTDESK in features:
        steps.append(Step("Install RustDesk", actions.install_rustdesk))
    if FEATURE_VSCODIUM in features:
        steps.append(Step("Install VSCodium", partial(pm.install, ["codium"])))

    steps.extend([
        Step("Remove unused packages", pm.remove_unused),
        Step("Clean APT cache", pm.clean_cache),
        Step("Clean temporary files", "systemd-tmpfiles --clean"),
        Step("Clean thumbnail cache", actions.cleanup_thumbnails),
    ])
    return steps


def run_setup(ctx, features, keep_log, pm, actions=None, shell=run_shell, lock_waiter=lock_wait_step, recorder=None):
    """
    Runs the whole setup sequence inside a transcript session.
    Returns (ledger, saved transcript path or None).
    """
    ledger = FailureLedger()
    runner = StepRunner(ledger, shell=shell)
    actions = actions or SetupActions(ctx, pm)
    recorder = recorder or TranscriptRecorder(SCRIPT_NAME, LOG_NAME, workdir=ctx.workdir)

    with recorder.session(ledger, keep_log) as handle:
        logger.info("Starting execution")
        flags = " ".join(f"{name}={int(name in features)}" for name in FEATURES)
        logger.info(f"Flags: log={int(bool(keep_log))} {flags}")
        logger.info(f"Free disk space: {format_bytes(disk_free_bytes())}")

        runner.run_steps(build_setup_steps(features, actions, pm, lock_waiter=lock_waiter))

        if FEATURE_DOCKER in features and actions.docker_ok and ctx.invoking_user:
            logger.info(f"Note: Log out and back in (or reboot) to use docker without sudo (user: {ctx.invoking_user}).")

        logger.info(f"Free disk space: {format_bytes(disk_free_bytes())}")
        print_summary(ledger)

    return ledger, handle.saved_path


# --- Command Line ---

def build_parser():
    parser = argparse.ArgumentParser(
        prog="kali-setup",
        description="Update the system, install essential tools, enable the firewall and optionally add extra apps.",
        epilog=(
            "Examples:\n"
            "  sudo kali-setup\n"
            "  sudo kali-setup --pwfeedback\n"
            "  sudo kali-setup --brave --mullvad --vscodium\n"
            "  sudo kali-setup --rustdesk --docker"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--log", action="store_true", help="Keep setup.log even if no errors occur")
    parser.add_argument("--pwfeedback", action="store_true", help="Enable sudo password feedback")
    parser.add_argument("--brave", action="store_true", help="Install Brave browser")
    parser.add_argument("--mullvad", action="store_true", help="Install Mullvad VPN and Mullvad Browser")
    parser.add_argument("--rustdesk", action="store_true", help="Install RustDesk")
    parser.add_argument("--vscodium", action="store_true", help="Install VSCodium")
    parser.add_argument("--docker", action="store_true", help="Install Docker Engine")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show executed commands and captured output")
    return parser


def enabled_features(args):
    return frozenset(name for name in FEATURES if getattr(args, name))


def main(argv=None):
    """Entry point; step failures are reported, not turned into a failing exit code."""
    ctx = RunContext.detect(SCRIPT_NAME)
    try:
        ctx.require_root()
    except PrivilegeError as e:
        console.print(Text(str(e), style="bold red"))
        return EXIT_PRIVILEGE

    args = build_parser().parse_args(argv)
    configure_logging(SCRIPT_NAME, verbose=args.verbose)

    try:
        run_setup(ctx, enabled_features(args), args.log, AptPackageManager(), shell=run_shell, lock_waiter=lock_wait_step)
    except KeyboardInterrupt:
        console.print("\n[bold yellow]Setup interrupted by user (Ctrl+C).[/bold yellow]")
        logger.warning("Setup interrupted by user (KeyboardInterrupt).")
        return EXIT_INTERRUPTED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
