"""
Works out what the debloat workflow would remove, shows it, and asks before
anything is touched. Also holds the browser stub protocol used to remove a
browser that the desktop metapackages depend on.
"""

import logging
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

from rich.text import Text

from orchestration import StepFailure, announce_step, console
from package_manager import current_kernel_version, run_command

logger = logging.getLogger(__name__)

# --- Configuration ---
KERNEL_IMAGE_PATTERN = "linux-image-*"
KERNEL_IMAGE_PREFIX = "linux-image-"
KERNEL_HEADERS_PREFIX = "linux-headers-"
# linux-image-amd64, linux-image-6-amd64, linux-image-rt-arm64: no dotted version.
KERNEL_META_PACKAGE = re.compile(r"^linux-image-(?:\d+-)?[a-z][a-z0-9-]*$")

BROWSER_PACKAGE = "firefox-esr"
BROWSER_LABEL = "Firefox browser"
STUB_PACKAGE = "debloat-firefox-stub"
STUB_PROVIDES = ("firefox", "firefox-esr", "gnome-www-browser", "www-browser")
REPLACEMENT_BROWSER = "brave-browser"

AFFIRMATIVE = ("y", "yes")


@dataclass(frozen=True)
class RemovalTarget:
    label: str
    packages: tuple

    def describe(self):
        return f"{self.label} ({' '.join(self.packages)})"


@dataclass(frozen=True)
class RemovalPlan:
    targets: tuple = ()
    old_kernels: tuple = ()
    kernel_headers: tuple = ()
    browser: RemovalTarget = None

    def display_targets(self):
        """Everything that would be removed, in the order it is shown."""
        shown = list(self.targets)
        if self.browser is not None:
            shown.append(self.browser)
        if self.old_kernels:
            shown.append(RemovalTarget("Old Linux kernel(s)", self.old_kernels))
        return shown

    @property
    def is_empty(self):
        return not self.display_targets()


# --- Planning ---

def find_old_kernels(installed_images, running_release):
    """
    Installed kernel image packages other than the running kernel's and the
    unversioned meta-packages. Input order is kept.
    """
    if not running_release:
        logger.warning("Running kernel release unknown; not selecting any kernels for removal.")
        return []
    return [
        name for name in installed_images
        if running_release not in name and not KERNEL_META_PACKAGE.match(name)
    ]


def kernel_header_packages(kernel_images):
    return [KERNEL_HEADERS_PREFIX + name[len(KERNEL_IMAGE_PREFIX):] for name in kernel_images]


def plan(groups, pm, include_kernels=False, include_browser_stub_flow=False, running_kernel=None):
    """
    Builds a RemovalPlan from live package state.

    `groups` is an ordered sequence of (label, candidate packages). Each group
    contributes only its installed candidates, and not at all when none is
    installed.
    """
    targets = []
    for label, candidates in groups:
        installed = tuple(pkg for pkg in candidates if pm.is_installed(pkg))
        if installed:
            targets.append(RemovalTarget(label, installed))
        else:
            logger.debug(f"Nothing installed for '{label}'")

    old_kernels = ()
    headers = ()
    if include_kernels:
        running = running_kernel or current_kernel_version()
        old_kernels = tuple(find_old_kernels(pm.installed_packages(KERNEL_IMAGE_PATTERN), running))
        headers = tuple(pkg for pkg in kernel_header_packages(old_kernels) if pm.is_installed(pkg))
        logger.debug(f"Running kernel {running}; old kernels: {old_kernels or 'none'}")

    browser = None
    if include_browser_stub_flow and pm.is_installed(BROWSER_PACKAGE):
        browser = RemovalTarget(BROWSER_LABEL, (BROWSER_PACKAGE,))

    return RemovalPlan(tuple(targets), old_kernels, headers, browser)


def render(removal_plan):
    """The removal listing shown before confirmation, or None when there is nothing to do."""
    shown = removal_plan.display_targets()
    if not shown:
        return None
    lines = ["", "The following will be removed:", ""]
    lines.extend(f"  * {target.describe()}" for target in shown)
    lines.append("")
    return "\n".join(lines)


def confirm(ask=None):
    """Reads one answer; only 'y' or 'yes' (any case) counts as consent."""
    if ask is None:
        ask = console.input
    try:
        response = ask(Text("Proceed? [y/N] "))
    except (EOFError, KeyboardInterrupt):
        console.print()
        return False
    return (response or "").strip().lower() in AFFIRMATIVE


# --- Browser Stub ---

def stub_control_file():
    """equivs control file for a placeholder that provides the browser's virtual packages."""
    return (
        "Section: web\n"
        "Priority: optional\n"
        "Standards-Version: 4.6.2\n"
        "\n"
        f"Package: {STUB_PACKAGE}\n"
        "Architecture: all\n"
        "Maintainer: debloat\n"
        f"Provides: {', '.join(STUB_PROVIDES)}\n"
        "Description: Placeholder satisfying Firefox dependencies\n"
        " Provides the firefox and firefox-esr virtual packages so desktop\n"
        " metapackages stay installed after the real browser is purged.\n"
    )


def build_stub_package(build_dir, run=run_command):
    """Builds the placeholder .deb in `build_dir` and returns its path."""
    build_dir = Path(build_dir)
    (build_dir / STUB_PACKAGE).write_text(stub_control_file())
    result = run(["equivs-build", STUB_PACKAGE], description="Building stub package", cwd=str(build_dir))
    if result.returncode != 0:
        raise StepFailure("equivs-build failed", result.returncode)
    debs = sorted(build_dir.glob(f"{STUB_PACKAGE}_*.deb"))
    if not debs:
        raise StepFailure(f"equivs-build produced no {STUB_PACKAGE} package")
    return debs[0]


def remove_browser_with_stub(runner, pm, ctx, run=run_command, which=shutil.which):
    """
    Replaces the browser with the placeholder, then purges it.

    Order matters: the placeholder must be installed before the purge or apt
    refuses to break the desktop metapackages' dependency. Skips as done when
    the browser is absent or the placeholder is already installed.
    """
    if not pm.is_installed(BROWSER_PACKAGE):
        logger.info("Firefox ESR is not installed. Skipping.")
        return 0
    if pm.is_installed(STUB_PACKAGE):
        logger.info("Firefox stub package already installed. Skipping.")
        return 0

    if which("equivs-build") is None:
        announce_step("Install equivs")
        code = pm.install(["equivs"])
        if code != 0:
            return code

    with tempfile.TemporaryDirectory(prefix=f"{ctx.script_name}.firefox-stub.") as build_dir:
        announce_step("Build Firefox stub package")
        deb_path = build_stub_package(build_dir, run=run)

        announce_step("Install Firefox stub package")
        code = pm.install_deb(deb_path)
        if code != 0:
            return code

    if not pm.is_installed(STUB_PACKAGE):
        raise StepFailure(f"{STUB_PACKAGE} is not installed after dpkg -i; not purging {BROWSER_PACKAGE}")

    runner.run("Purge Firefox ESR package", lambda: pm.purge([BROWSER_PACKAGE]))

    if ctx.home_dir is not None:
        profile_dir = Path(ctx.home_dir) / ".mozilla"
        if profile_dir.is_dir():
            announce_step("Remove Firefox user data")
            shutil.rmtree(profile_dir, ignore_errors=True)

    if pm.is_installed(REPLACEMENT_BROWSER):
        announce_step("Set Brave as default browser")
        run(
            ["sudo", "-u", ctx.target_user, "xdg-settings", "set", "default-web-browser", "brave-browser.desktop"],
            description="xdg-settings set default-web-browser",
            capture=True,
        )
    return 0
