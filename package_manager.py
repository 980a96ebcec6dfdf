"""
Thin wrappers over apt/dpkg and the host commands the workflows rely on.

Mutating operations return the command's exit code; queries return plain
values. Nothing here raises on a non-zero exit except the host identity
helpers, which have no meaningful fallback value.
"""

import logging
import os
import platform
import shlex
import subprocess
import threading
from pathlib import Path

from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax

from orchestration import StepFailure, console

logger = logging.getLogger(__name__)

NONINTERACTIVE_ENV = {"DEBIAN_FRONTEND": "noninteractive"}

EXIT_COMMAND_NOT_FOUND = 127
EXIT_TIMED_OUT = 124
# Output left in the pipe after a kill is dropped past this.
READER_JOIN_SECS = 5
# apt-get update is the one network-bound call that can hang on a dead mirror.
APT_UPDATE_TIMEOUT_SECS = 900


class CommandError(StepFailure):
    """A host query command failed and its output cannot be used."""


# --- Helper Functions ---

def format_command(argv):
    return " ".join(shlex.quote(str(arg)) for arg in argv)


def _stream_lines(stream):
    for line in stream:
        console.out(line.rstrip("\n"), highlight=False)


def run_command(command, description="Running command", env=None, cwd=None, capture=False, timeout=None):
    """
    Runs a command (argument list) and always returns a CompletedProcess.

    With capture=False the combined stdout/stderr is streamed line by line
    through the shared console, so it reaches the terminal and the transcript.
    With capture=True the output is returned to the caller and only logged at
    debug level. A missing executable yields exit code 127. A command still
    running after `timeout` seconds is killed and yields 124.
    """
    argv = [str(arg) for arg in command]
    cmd_str_display = format_command(argv)
    logger.debug(f"Executing: {cmd_str_display}")
    if description != cmd_str_display:
        console.log(f"{escape(description)}: [dim]{escape(cmd_str_display)}[/dim]")

    full_env = os.environ.copy()
    if env:
        full_env.update(env)

    try:
        if capture:
            result = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                cwd=cwd,
                env=full_env,
                timeout=timeout,
            )
            logger.debug(f"Return Code: {result.returncode}")
            if result.stdout:
                logger.debug(f"Stdout:\n{result.stdout.strip()}")
            if result.stderr:
                logger.debug(f"Stderr:\n{result.stderr.strip()}")
            return result

        with subprocess.Popen(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            cwd=cwd,
            env=full_env,
        ) as proc:
            # Output is drained on a separate thread so the deadline below is enforced.
            reader = threading.Thread(target=_stream_lines, args=(proc.stdout,), daemon=True)
            reader.start()
            try:
                returncode = proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
                reader.join(READER_JOIN_SECS)
                raise
            reader.join()
        logger.debug(f"Return Code: {returncode}")
        return subprocess.CompletedProcess(argv, returncode, "", "")

    except subprocess.TimeoutExpired:
        logger.error(f"Command timed out after {timeout} seconds: {cmd_str_display}")
        return subprocess.CompletedProcess(argv, EXIT_TIMED_OUT, "", "")
    except FileNotFoundError:
        logger.error(f"Command executable not found: '{argv[0]}'")
        return subprocess.CompletedProcess(argv, EXIT_COMMAND_NOT_FOUND, "", "")


def write_file(path, content, permissions=None, show_content=False):
    """
    Writes content to a file, creating parent directories if needed.
    Optionally sets permissions (an int such as 0o644).
    Returns True on success, False on failure; a partially written file is removed.
    """
    path = Path(path)
    logger.info(f"Writing file: {path}")

    if show_content:
        lang = "ini" if path.suffix in (".sources", ".list", ".conf") else "text"
        syntax = Syntax(content, lang, theme="default", line_numbers=True, word_wrap=False)
        console.print(Panel(syntax, title=f"Content for {path.name}", border_style="dim"))

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        if permissions is not None:
            os.chmod(path, permissions)
            logger.debug(f"Set permissions {oct(permissions)} for {path}")
        return True
    except OSError as e:
        logger.error(f"Failed writing file {path}: {e}")
        path.unlink(missing_ok=True)
        return False


# --- Host Identity ---

def current_architecture(run=run_command):
    """Debian architecture name of the host, e.g. amd64 or arm64."""
    result = run(["dpkg", "--print-architecture"], description="Getting system architecture", capture=True)
    arch = (result.stdout or "").strip()
    if result.returncode != 0 or not arch:
        raise CommandError("Could not determine system architecture using dpkg.")
    return arch


def current_kernel_version():
    """Release string of the running kernel, as `uname -r` prints it."""
    return platform.release()


# --- Package Manager ---

class AptPackageManager:
    """The system package manager, reached through apt-get, apt-cache and dpkg."""

    def __init__(self, run=run_command):
        self.run = run

    # Queries

    def is_installed(self, package):
        result = self.run(
            ["dpkg-query", "-W", "-f=${db:Status-Abbrev}", package],
            description=f"Checking {package}",
            capture=True,
        )
        return result.returncode == 0 and (result.stdout or "").startswith("ii")

    def installed_packages(self, pattern):
        """Names of installed packages matching a dpkg glob such as 'linux-image-*'."""
        result = self.run(
            ["dpkg-query", "-W", "-f=${db:Status-Abbrev} ${Package}\n", pattern],
            description=f"Listing {pattern}",
            capture=True,
        )
        names = []
        for line in (result.stdout or "").splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[0].startswith("ii"):
                names.append(parts[-1])
        return names

    def candidate_version(self, package):
        """The version apt would install, or None."""
        result = self.run(["apt-cache", "policy", package], description=f"Querying {package} policy", capture=True)
        for line in (result.stdout or "").splitlines():
            key, _, value = line.strip().partition(":")
            if key == "Candidate":
                value = value.strip()
                return None if value in ("", "(none)") else value
        return None

    # Mutations

    def update_index(self):
        return self.run(["apt-get", "update"], description="apt-get update", timeout=APT_UPDATE_TIMEOUT_SECS).returncode

    def upgrade(self):
        return self.run(["apt-get", "upgrade", "-y"], description="apt-get upgrade", env=NONINTERACTIVE_ENV).returncode

    def install(self, packages):
        return self.run(
            ["apt-get", "install", "-y", *packages],
            description="apt-get install",
            env=NONINTERACTIVE_ENV,
        ).returncode

    def install_local(self, deb_path):
        """Installs a downloaded .deb through apt so its dependencies are resolved."""
        return self.run(
            ["apt-get", "install", "-fy", str(deb_path)],
            description=f"Installing {Path(deb_path).name}",
            env=NONINTERACTIVE_ENV,
        ).returncode

    def install_deb(self, deb_path):
        return self.run(["dpkg", "-i", str(deb_path)], description=f"dpkg -i {Path(deb_path).name}").returncode

    def purge(self, packages):
        return self.run(
            ["apt-get", "purge", "-y", *packages],
            description="apt-get purge",
            env=NONINTERACTIVE_ENV,
        ).returncode

    def remove(self, packages):
        return self.run(
            ["apt-get", "remove", "-y", *packages],
            description="apt-get remove",
            env=NONINTERACTIVE_ENV,
        ).returncode

    def remove_unused(self):
        return self.run(["apt-get", "autoremove", "-y"], description="apt-get autoremove", env=NONINTERACTIVE_ENV).returncode

    def clean_cache(self):
        return self.run(["apt-get", "clean"], description="apt-get clean").returncode
