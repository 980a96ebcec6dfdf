"""
Waiting for other package-manager processes to release the dpkg/apt locks.

Locks are only observed, never created or removed. A lock is held when some
process has the lock file open, which `fuser` reports with exit status 0.
"""

import enum
import logging
import shutil
import subprocess
import time
import warnings
from dataclasses import dataclass

from orchestration import DegradedCapability

logger = logging.getLogger(__name__)

# --- Configuration ---
APT_LOCK_FILES = (
    "/var/lib/dpkg/lock",
    "/var/lib/dpkg/lock-frontend",
    "/var/lib/apt/lists/lock",
    "/var/cache/apt/archives/lock",
)
LOCK_TIMEOUT_SECS = 600
LOCK_POLL_INTERVAL_SECS = 2
# Pause taken instead of checking when fuser is missing.
LOCK_GRACE_SECS = 5


class LockStatus(enum.Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"
    # fuser unavailable; proceeded after the grace sleep without checking.
    UNCHECKED = "unchecked"


@dataclass(frozen=True)
class LockWait:
    status: LockStatus
    polls: int = 0

    @property
    def ready(self):
        return self.status is not LockStatus.TIMED_OUT


def fuser_is_held(path):
    """True when some process has the file open."""
    result = subprocess.run(
        ["fuser", path],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    return result.returncode == 0


def default_probe():
    """The fuser-based held-state test, or None when fuser is not installed."""
    if shutil.which("fuser") is None:
        return None
    return fuser_is_held


def wait_for_locks(
    lock_ids=APT_LOCK_FILES,
    timeout=LOCK_TIMEOUT_SECS,
    poll_interval=LOCK_POLL_INTERVAL_SECS,
    is_held=None,
    sleep=time.sleep,
    clock=time.monotonic,
):
    """
    Polls every lock at a fixed interval until all are free or `timeout`
    seconds have passed.

    Returns READY without sleeping when nothing is held. When no probe is
    given and fuser is missing, sleeps LOCK_GRACE_SECS once and returns
    UNCHECKED: the caller may proceed, but nothing was verified.
    """
    if is_held is None:
        is_held = default_probe()
        if is_held is None:
            warnings.warn("Lock detection utility not found... proceeding without checks.", DegradedCapability)
            sleep(LOCK_GRACE_SECS)
            return LockWait(LockStatus.UNCHECKED)

    start = clock()
    polls = 0
    while True:
        held = next((lock for lock in lock_ids if is_held(lock)), None)
        if held is None:
            if polls:
                logger.info(f"Package manager locks released after {polls} check(s).")
            return LockWait(LockStatus.READY, polls)

        if clock() - start >= timeout:
            logger.error("Package manager locks held for too long.")
            return LockWait(LockStatus.TIMED_OUT, polls)

        logger.info(f"Waiting for package manager locks... ({held})")
        sleep(poll_interval)
        polls += 1


def lock_wait_step(**kwargs):
    """Step action: exit code 0 once the locks are free, 1 on timeout."""
    return 0 if wait_for_locks(**kwargs).ready else 1
