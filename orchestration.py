"""
Step orchestration shared by the setup and debloat workflows.

Every step runs to completion, failures are recorded in a FailureLedger and
the run always moves on to the next step. The ledger decides the summary and
whether the transcript is kept.
"""

import logging
import os
import pwd
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

import psutil
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

logger = logging.getLogger(__name__)

# --- Console for Rich Output ---
# Shared by every module; the transcript recorder swaps its output file.
console = Console(log_time_format="[%Y-%m-%d %H:%M:%S]")

LOG_FORMAT_TEMPLATE = "[{script}] %(message)s"
LOG_TIME_FORMAT = "[%Y-%m-%d %H:%M:%S]"


# --- Errors ---

class PrivilegeError(Exception):
    """Raised before any work when the process is not running as root."""


class StepFailure(Exception):
    """Raised by a step action to fail with a specific exit code."""

    def __init__(self, message, code=1):
        super().__init__(message)
        self.code = code if code else 1


class DegradedCapability(UserWarning):
    """A host capability is missing and the run continues with a weaker guarantee."""


# --- Logging ---

def configure_logging(script_name, verbose=False):
    """
    Routes log records through the shared console so they land in the
    terminal and the transcript alike.
    Safe to call more than once; the handler is replaced, not duplicated.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_postinstall_handler", False):
            root.removeHandler(handler)

    handler = RichHandler(
        console=console,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
        log_time_format=LOG_TIME_FORMAT,
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT_TEMPLATE.format(script=script_name)))
    handler._postinstall_handler = True
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    # DegradedCapability and other warnings reach the transcript too.
    logging.captureWarnings(True)
    return handler


# --- Run Context ---

@dataclass(frozen=True)
class RunContext:
    """Identity of the run, resolved once at start and passed to every step."""

    script_name: str
    is_root: bool
    invoking_user: str = None
    home_dir: Path = None
    workdir: Path = field(default_factory=Path.cwd)

    @classmethod
    def detect(cls, script_name, environ=None):
        """Builds the context from the effective uid and SUDO_USER."""
        environ = os.environ if environ is None else environ
        sudo_user = environ.get("SUDO_USER") or None
        if sudo_user == "root":
            sudo_user = None

        home_dir = None
        try:
            home_dir = Path(pwd.getpwnam(sudo_user or "root").pw_dir)
        except KeyError:
            logger.warning(f"No passwd entry for user '{sudo_user or 'root'}'; home directory unknown.")

        return cls(
            script_name=script_name,
            is_root=os.geteuid() == 0,
            invoking_user=sudo_user,
            home_dir=home_dir,
            workdir=Path.cwd(),
        )

    @property
    def target_user(self):
        """The user whose home directory and desktop settings are touched."""
        return self.invoking_user or "root"

    def require_root(self):
        if not self.is_root:
            raise PrivilegeError(f"[{self.script_name}] ERROR: This script must be run as root (use sudo).")


# --- Steps & Outcomes ---

@dataclass(frozen=True)
class StepOutcome:
    code: int = 0

    @property
    def ok(self):
        return self.code == 0


SUCCESS = StepOutcome(0)


@dataclass(frozen=True)
class Step:
    """A named action: a callable, or a shell command string run through bash."""

    name: str
    action: object


def normalize_outcome(result):
    """Maps whatever an action returned onto a StepOutcome."""
    if result is None or result is True:
        return SUCCESS
    if result is False:
        return StepOutcome(1)
    if isinstance(result, StepOutcome):
        return result
    if isinstance(result, subprocess.CompletedProcess):
        return StepOutcome(result.returncode)
    if isinstance(result, int):
        return StepOutcome(result)
    logger.debug(f"Unrecognised step result {result!r}; treating as success.")
    return SUCCESS


class FailureLedger:
    """Ordered (step name, exit code) pairs for every failed step of a run."""

    def __init__(self):
        self._entries = []

    def record(self, name, code):
        self._entries.append((name, code))

    def is_clean(self):
        return not self._entries

    def render_summary(self):
        return [f"{name} (exit {code})" for name, code in self._entries]

    @property
    def entries(self):
        return list(self._entries)

    def __len__(self):
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries)


def run_shell(command):
    """Runs an opaque command string in a login bash shell, streaming its output."""
    # package_manager imports this module at load time.
    from package_manager import run_command

    return run_command(["bash", "-lc", command], description=command).returncode


class StepRunner:
    """
    Executes steps one after another against a shared FailureLedger.
    run() never raises: every failure becomes a ledger entry.
    """

    def __init__(self, ledger=None, shell=run_shell):
        self.ledger = ledger if ledger is not None else FailureLedger()
        self.shell = shell

    def run(self, name, action):
        announce_step(name)
        try:
            if isinstance(action, str):
                outcome = normalize_outcome(self.shell(action))
            else:
                outcome = normalize_outcome(action())
        except StepFailure as e:
            logger.error(f"{name}: {e}")
            outcome = StepOutcome(e.code)
        except Exception:
            logger.exception(f"Unexpected error during step '{name}'")
            outcome = StepOutcome(1)

        if not outcome.ok:
            self.record_failure(name, outcome.code)
        return outcome

    def run_step(self, step):
        return self.run(step.name, step.action)

    def run_steps(self, steps):
        for step in steps:
            self.run_step(step)
        return self.ledger

    def record_failure(self, name, code):
        self.ledger.record(name, code)
        logger.warning(f"ERROR: Step failed: {name} (exit {code})")
        logger.warning("Continuing execution.")


def announce_step(name):
    console.print()
    console.print(Rule(Text.assemble(("[STEP] ", "bold cyan"), name), align="left", style="cyan"))


# --- Summary ---

def print_summary(ledger):
    """Prints the end-of-run report; failed steps are listed in execution order."""
    console.print()
    if ledger.is_clean():
        logger.info("Finished successfully")
        console.print(Panel(
            Text("Finished successfully", justify="center", style="bold green"),
            border_style="green",
            expand=False,
        ))
        return

    logger.warning("Finished with errors")
    logger.warning(f"{len(ledger)} step(s) failed:")
    lines = [f"  {i}) {entry}" for i, entry in enumerate(ledger.render_summary(), start=1)]
    console.print(Panel(
        Text("\n".join(lines)),
        title="[bold red]Failed steps[/bold red]",
        border_style="red",
        expand=False,
    ))


# --- Host Report ---

def disk_free_bytes(path="/"):
    return psutil.disk_usage(str(path)).free


def format_bytes(num):
    for unit in ("B", "KB", "MB", "GB"):
        if abs(num) < 1024:
            return f"{num:.0f} {unit}" if unit == "B" else f"{num:.1f} {unit}"
        num /= 1024
    return f"{num:.1f} TB"
