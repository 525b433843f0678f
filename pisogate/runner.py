#!/usr/bin/env python3
"""
PisoGate Command Runner
=======================

Executes external commands (ip, iptables, tc, conntrack, ...) as argv
lists, never through a shell.

Features:
- Per-command timeout
- Structured CommandResult instead of raw CompletedProcess
- best_effort() for idempotent cleanup, with a named set of
  "object did not exist" conditions
- Detached daemon spawning

Author: Team PisoGate
"""

import os
import re
import subprocess
from dataclasses import dataclass
from typing import Dict, IO, Iterable, List, Optional

from loguru import logger

from .errors import CommandError


@dataclass
class CommandResult:
    """Outcome of one external command."""
    argv: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return ((self.stdout or "") + ("\n" + self.stderr if self.stderr else "")).strip()


# Failure text that means "the thing we tried to remove/create was
# already in the desired state".
EXPECTED_CONDITIONS: Dict[str, re.Pattern] = {
    "no_such_device": re.compile(r"Cannot find device|does not exist|No such device", re.I),
    "no_such_rule": re.compile(r"does a matching rule exist|Bad rule", re.I),
    "no_chain": re.compile(r"No chain/target/match by that name", re.I),
    "chain_exists": re.compile(r"Chain already exists", re.I),
    "chain_in_use": re.compile(r"Too many links|Directory not empty", re.I),
    "file_exists": re.compile(r"File exists", re.I),
    "tc_no_object": re.compile(r"Cannot find specified|Cannot delete qdisc with handle of zero|"
                               r"No such file or directory|Cannot find class|Filter with specified priority",
                               re.I),
    "tc_invalid_argument": re.compile(r"Invalid argument|Invalid handle", re.I),
    "no_such_process": re.compile(r"no process found|No such process", re.I),
    "conntrack_empty": re.compile(r"0 flow entries have been deleted", re.I),
    "module_missing": re.compile(r"Module \S+ not found", re.I),
}


def classify_failure(result: CommandResult) -> Optional[str]:
    """Name of the expected condition a failed command matches, if any."""
    text = result.output
    for name, pattern in EXPECTED_CONDITIONS.items():
        if pattern.search(text):
            return name
    # pkill/pgrep exit 1 with no output when nothing matched
    if result.returncode == 1 and not text and result.argv and result.argv[0] in ("pkill", "pgrep", "killall"):
        return "no_such_process"
    return None


class CommandRunner:
    """
    Runs argv lists with subprocess.

    Tests substitute an object with the same run()/spawn() surface.
    """

    def __init__(self, timeout: float = 30.0, env: Optional[Dict[str, str]] = None):
        self.timeout = timeout
        self.env = env

    def run(self, argv: List[str], check: bool = True,
            timeout: Optional[float] = None) -> CommandResult:
        """
        Run a command to completion.

        Args:
            argv: Command and arguments
            check: Raise CommandError on non-zero exit or timeout
            timeout: Seconds; defaults to the runner timeout

        Returns:
            CommandResult
        """
        argv = [str(a) for a in argv]
        logger.debug(f"exec: {' '.join(argv)}")
        try:
            proc = subprocess.run(
                argv,
                capture_output=True, text=True,
                timeout=timeout or self.timeout,
                env=self.env,
            )
            result = CommandResult(argv, proc.returncode, proc.stdout or "", proc.stderr or "")
        except subprocess.TimeoutExpired as e:
            # The command may still complete on its own; callers reconcile later.
            result = CommandResult(argv, -1, _text(e.stdout), _text(e.stderr), timed_out=True)
        except FileNotFoundError as e:
            result = CommandResult(argv, 127, "", str(e))

        if check and not result.ok:
            raise CommandError(argv, result.returncode, result.stdout, result.stderr, result.timed_out)
        return result

    def spawn(self, argv: List[str], log_path: Optional[str] = None) -> Optional[int]:
        """
        Start a detached background process.

        Output is appended to log_path when given. Returns the pid.
        """
        argv = [str(a) for a in argv]
        logger.debug(f"spawn: {' '.join(argv)}")
        log_file: Optional[IO] = None
        try:
            if log_path:
                log_file = open(log_path, "a")
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=log_file or subprocess.DEVNULL,
                stderr=subprocess.STDOUT if log_file else subprocess.DEVNULL,
                start_new_session=True,
                env=self.env,
            )
            return proc.pid
        finally:
            if log_file:
                log_file.close()

    def which(self, exe: str) -> bool:
        return self.run(["which", exe], check=False).ok


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return value


def best_effort(runner, argv: List[str], expected: Optional[Iterable[str]] = None,
                timeout: Optional[float] = None) -> bool:
    """
    Run a cleanup/idempotent command whose failure is acceptable.

    Failures matching one of the expected conditions are logged at DEBUG,
    anything else at WARNING. Never raises.

    Args:
        runner: CommandRunner-like object
        argv: Command
        expected: Names from EXPECTED_CONDITIONS (None = all of them)
        timeout: Optional timeout override

    Returns:
        True if the command succeeded
    """
    result = runner.run(argv, check=False, timeout=timeout)
    if result.ok:
        return True

    condition = classify_failure(result)
    allowed = set(expected) if expected is not None else set(EXPECTED_CONDITIONS) | {"no_such_process"}
    if condition and condition in allowed:
        logger.debug(f"{' '.join(result.argv)}: {condition}")
    else:
        logger.warning(f"Cleanup command failed unexpectedly: {' '.join(result.argv)} "
                       f"(rc={result.returncode}) {result.output[:200]}")
    return False


def delete_until_absent(runner, argv: List[str], max_attempts: int = 10) -> int:
    """
    Repeat a delete command until the kernel reports nothing left to delete.

    Prior state cardinality is unknown, so stale duplicates are removed
    one per call. Returns the number of successful deletions.
    """
    removed = 0
    for _ in range(max_attempts):
        result = runner.run(argv, check=False)
        if not result.ok:
            condition = classify_failure(result)
            if condition not in ("no_such_rule", "no_chain", "no_such_device", "tc_no_object"):
                logger.warning(f"Unexpected failure removing rule: {' '.join(result.argv)} {result.output[:200]}")
            break
        removed += 1
    return removed


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)
