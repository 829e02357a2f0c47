"""Command execution utilities for the external tools this project drives."""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path
from typing import Iterable, Optional, Sequence

from zfs_bmr.logging import get_logger, redact_command

log = get_logger(source="command", tags=["command"])

SBIN_PREFIXES = ("/usr/sbin", "/sbin", "/usr/local/sbin")


class CommandError(RuntimeError):
    """A checked command exited non-zero."""

    def __init__(self, command: str, returncode: int, stdout: str, stderr: str):
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = stderr.strip() or stdout.strip() or "Command failed"
        super().__init__(f"Command failed ({command}): {message}")


def which(tool: str) -> Optional[str]:
    """Find an executable in PATH or the usual sbin locations.

    Cron and rescue shells often run with a PATH that lacks /sbin.
    """
    found = shutil.which(tool)
    if found:
        return found
    for prefix in SBIN_PREFIXES:
        candidate = Path(prefix) / tool
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
    return None


class CommandRunner:
    """Runs short-lived commands with captured output.

    Streaming commands go through ``zfs_bmr.storage.pipeline`` instead; this
    runner is for control-plane calls (zfs, mount, sgdisk, ...).
    """

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        input_text: Optional[str] = None,
        secrets: Iterable[str] = (),
        timeout: Optional[float] = None,
    ) -> subprocess.CompletedProcess:
        rendered = redact_command(command, secrets)
        log.debug(f"Running command: {rendered}")
        result = subprocess.run(
            list(command),
            input=input_text,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
        if result.returncode != 0:
            log.debug(
                f"Command exited {result.returncode}: {rendered}",
                stderr=(result.stderr or "").strip()[-500:],
            )
            if check:
                raise CommandError(
                    rendered, result.returncode, result.stdout or "", result.stderr or ""
                )
        return result

    def run_checked(self, command: Sequence[str], **kwargs) -> str:
        """Run a command and return its stdout, raising CommandError on failure."""
        return self.run(command, check=True, **kwargs).stdout

    def succeeds(self, command: Sequence[str], **kwargs) -> bool:
        try:
            return self.run(command, check=False, **kwargs).returncode == 0
        except (OSError, subprocess.TimeoutExpired) as error:
            log.debug(f"Command could not run: {error}")
            return False
