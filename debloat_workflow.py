#!/usr/bin/env python3

"""
Debloat: removes desktop extras that a typical install does not need,
optionally old kernels and the bundled browser.

Shows what would be removed and asks once; nothing is purged without a
"y"/"yes" answer. debloat.log is kept when a step fails or --log is given.
"""

import argparse
import logging
import shutil
import sys
from functools import partial

from rich.text import Text

from apt_locks import lock_wait_step
from orchestration import (
    FailureLedger,
    PrivilegeError,
    RunContext,
    Step,
    StepRunner,
    configure_logging,
    console,
    disk_free_bytes,
    format_bytes,
    print_summary,
    run_shell,
)
from package_manager import AptPackageManager, run_command
from removal_planner import confirm, plan, remove_browser_with_stub, render
from transcript import TranscriptRecorder

logger = logging.getLogger(__name__)

# --- Configuration ---
SCRIPT_NAME = "debloat"
LOG_NAME = "debloat.log"

EXIT_OK = 0
EXIT_PRIVILEGE = 1
EXIT_INTERRUPTED = 130

# (label shown to the user, packages removed together)
REMOVE_GROUPS = (
    ("GNOME Videos player", ("totem", "totem-plugins", "totem-common")),
    ("Screen reader", ("orca",)),
    ("Media streaming server", ("rygel",)),
    ("Thunderbolt manager", ("bolt",)),
    ("GNOME help documentation", ("gnome-user-docs",)),
    ("Help viewer app", ("yelp",)),
    ("Parental controls", ("malcontent", "malcontent-gui")),
    ("GNOME remote desktop", ("gnome-remote-desktop",)),
    ("Software center backend", ("packagekit",)),
)

FEATURE_KERNELS = "kernels"
FEATURE_FIREFOX = "firefox"
FEATURES = (FEATURE_KERNELS, FEATURE_FIREFOX)


# --- Step Template ---

def build_debloat_steps(removal_plan, features, runner, pm, ctx, lock_waiter=lock_wait_step, run=run_command, which=shutil.which):
    steps = [Step("Wait for package manager locks", lock_waiter)]

    for target in removal_plan.targets:
        steps.append(Step(f"Remove {target.label}", partial(pm.purge, list(target.packages))))

    if FEATURE_FIREFOX in features:
        steps.append(Step(
            "Remove Firefox ESR",
            partial(remove_browser_with_stub, runner, pm, ctx, run=run, which=which),
        ))

    if FEATURE_KERNELS in features and removal_plan.old_kernels:
        kernel_packages = [*removal_plan.old_kernels, *removal_plan.kernel_headers]
        steps.append(Step("Remove old kernel(s)", partial(pm.purge, kernel_packages)))

    steps.extend([
        Step("Remove unused dependencies", pm.remove_unused),
        Step("Clean APT cache", pm.clean_cache),
    ])
    return steps


def run_debloat(removal_plan, features, ctx, keep_log, pm, shell=run_shell, lock_waiter=lock_wait_step,
                run=run_command, which=shutil.which, recorder=None):
    """
    Executes an already confirmed plan inside a transcript session.
    Returns (ledger, saved transcript path or None).
    """
    ledger = FailureLedger()
    runner = StepRunner(ledger, shell=shell)
    recorder = recorder or TranscriptRecorder(SCRIPT_NAME, LOG_NAME, workdir=ctx.workdir)

    with recorder.session(ledger, keep_log) as handle:
        logger.info("Starting execution")
        flags = " ".join(f"{name}={int(name in features)}" for name in FEATURES)
        logger.info(f"Flags: log={int(bool(keep_log))} {flags}")
        free_before = disk_free_bytes()

        if FEATURE_KERNELS in features and not removal_plan.old_kernels:
            logger.info("No old kernels to remove.")
        steps = build_debloat_steps(removal_plan, features, runner, pm, ctx, lock_waiter=lock_waiter, run=run, which=which)
        runner.run_steps(steps)

        freed = disk_free_bytes() - free_before
        if freed > 0:
            logger.info(f"Disk space reclaimed: {format_bytes(freed)}")
        print_summary(ledger)

    return ledger, handle.saved_path


def debloat(ctx, features, keep_log, pm, ask=None, running_kernel=None, **collaborators):
    """
    Plans, asks for confirmation, then runs. Returns the ledger, or None when
    nothing was run (nothing to remove, or the user declined).
    """
    removal_plan = plan(
        REMOVE_GROUPS,
        pm,
        include_kernels=FEATURE_KERNELS in features,
        include_browser_stub_flow=FEATURE_FIREFOX in features,
        running_kernel=running_kernel,
    )

    listing = render(removal_plan)
    if listing is None:
        console.print("Nothing to remove. System is already debloated.")
        return None

    console.print(Text(listing))
    if not confirm(ask):
        console.print("Aborted.")
        return None

    ledger, _ = run_debloat(removal_plan, features, ctx, keep_log, pm, **collaborators)
    return ledger


# --- Command Line ---

def build_parser():
    parser = argparse.ArgumentParser(
        prog="kali-debloat",
        description="Remove unnecessary packages to free disk space, with safe defaults.",
        epilog=(
            "Examples:\n"
            "  sudo kali-debloat\n"
            "  sudo kali-debloat --kernels\n"
            "  sudo kali-debloat --firefox\n"
            "  sudo kali-debloat --log --kernels --firefox"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--log", action="store_true", help="Keep debloat.log even if no errors occur")
    parser.add_argument("--kernels", action="store_true", help="Also remove old Linux kernels (keeps the running kernel)")
    parser.add_argument("--firefox", action="store_true", help="Remove Firefox ESR and replace it with a stub package")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show executed commands and captured output")
    return parser


def enabled_features(args):
    return frozenset(name for name in FEATURES if getattr(args, name))


def main(argv=None):
    ctx = RunContext.detect(SCRIPT_NAME)
    try:
        ctx.require_root()
    except PrivilegeError as e:
        console.print(Text(str(e), style="bold red"))
        return EXIT_PRIVILEGE

    args = build_parser().parse_args(argv)
    configure_logging(SCRIPT_NAME, verbose=args.verbose)

    try:
        debloat(ctx, enabled_features(args), args.log, AptPackageManager(), shell=run_shell, lock_waiter=lock_wait_step)
    except KeyboardInterrupt:
        console.print("\n[bold yellow]Debloat interrupted by user (Ctrl+C).[/bold yellow]")
        logger.warning("Debloat interrupted by user (KeyboardInterrupt).")
        return EXIT_INTERRUPTED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
