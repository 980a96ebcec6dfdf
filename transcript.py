"""
Run transcript: everything written to the shared console during a run is
also copied into a temporary log file. At the end the file is either moved to
./<script>.log or deleted, never both and never neither.
"""

import logging
import os
import re
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from orchestration import console as shared_console

logger = logging.getLogger(__name__)

ANSI_ESCAPE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")


class TeeStream:
    """File-like object that writes every chunk to the terminal stream and the sink."""

    def __init__(self, primary, sink):
        self.primary = primary
        self.sink = sink

    def write(self, data):
        self.primary.write(data)
        if not self.sink.closed:
            self.sink.write(ANSI_ESCAPE.sub("", data))
        return len(data)

    def flush(self):
        self.primary.flush()
        if not self.sink.closed:
            self.sink.flush()

    def isatty(self):
        return self.primary.isatty()

    def fileno(self):
        return self.primary.fileno()

    @property
    def encoding(self):
        return getattr(self.primary, "encoding", "utf-8")


@dataclass
class TranscriptHandle:
    path: Path
    sink: object
    tee: TeeStream
    previous_file: object = None
    finalized: bool = False
    saved_path: Path = None


def should_retain(keep_log, ledger):
    """The transcript is kept when asked for, or when any step failed."""
    return bool(keep_log) or not ledger.is_clean()


class TranscriptRecorder:
    def __init__(self, script_name, log_name=None, workdir=None, console=None, tmpdir=None):
        self.script_name = script_name
        self.log_name = log_name or f"{script_name}.log"
        self.workdir = Path(workdir) if workdir is not None else Path.cwd()
        self.console = console or shared_console
        self.tmpdir = tmpdir

    @property
    def destination(self):
        return self.workdir / self.log_name

    def begin(self):
        """Allocates the temporary sink and starts duplicating console output into it."""
        fd, path = tempfile.mkstemp(prefix=f"{self.script_name}.", suffix=".log", dir=self.tmpdir)
        sink = os.fdopen(fd, "w", encoding="utf-8", buffering=1)
        # Console.file falls back to sys.stdout when _file is None; keep that behaviour on restore.
        previous = getattr(self.console, "_file", None)
        tee = TeeStream(self.console.file, sink)
        self.console.file = tee
        logger.debug(f"Recording transcript to {path}")
        return TranscriptHandle(path=Path(path), sink=sink, tee=tee, previous_file=previous)

    def finalize(self, handle, retain):
        """
        Stops recording, then promotes the temporary file to the permanent
        log name if `retain`, otherwise deletes it. Returns the saved path or None.
        """
        if handle.finalized:
            return handle.saved_path
        handle.finalized = True

        if self.console.file is handle.tee:
            self.console.file = handle.previous_file
        handle.sink.close()

        if not retain:
            handle.path.unlink(missing_ok=True)
            return None

        destination = self.destination
        try:
            shutil.move(str(handle.path), str(destination))
            handle.saved_path = destination
        except OSError as move_err:
            logger.debug(f"Moving transcript failed ({move_err}); copying instead.")
            try:
                shutil.copyfile(handle.path, destination)
                handle.saved_path = destination
            except OSError as copy_err:
                logger.error(f"Could not save transcript to {destination}: {copy_err}")
            finally:
                handle.path.unlink(missing_ok=True)
        return handle.saved_path

    @contextmanager
    def session(self, ledger, keep_log=False):
        """
        Records the block's console output. On exit the retention policy is
        applied to `ledger`; an exception escaping the block counts as a
        failed run and keeps the transcript.
        """
        handle = self.begin()
        retain = True
        try:
            yield handle
            retain = should_retain(keep_log, ledger)
        finally:
            saved = self.finalize(handle, retain)
            if saved is not None:
                logger.info(f"Log saved: ./{self.log_name}")
