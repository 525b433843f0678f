"""
PisoGate Process Supervisor
===========================

Tracks a detached daemon (pppoe-server) through explicit states instead
of fire-and-forget launching:

    STOPPED -> STARTING -> RUNNING
                        -> FAILED

Liveness is checked by process name, since the daemon forks away from
the pid we spawned.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, List, Optional

from loguru import logger

from . import commands
from .runner import best_effort

NOTES_MAX_LINES = 50


class ProcessState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"


@dataclass
class StartResult:
    ok: bool
    pid: Optional[int]
    state: ProcessState
    error: Optional[str] = None


class SupervisedProcess:
    def __init__(self, runner, process_name: str, grace_seconds: float = 2.0,
                 log_path: Optional[str] = None, sleep: Callable[[float], None] = time.sleep):
        self.runner = runner
        self.process_name = process_name
        self.grace_seconds = grace_seconds
        self.log_path = log_path
        self._sleep = sleep
        self._lock = threading.Lock()
        self.state = ProcessState.STOPPED
        self.pid: Optional[int] = None
        self.argv: List[str] = []
        self.notes: Deque[str] = deque(maxlen=NOTES_MAX_LINES)

    def _note(self, msg: str) -> None:
        self.notes.append(msg)
        logger.debug(f"[{self.process_name}] {msg}")

    def is_alive(self) -> bool:
        return self.runner.run(commands.pgrep_exact(self.process_name), check=False).ok

    def refresh(self) -> ProcessState:
        """Refresh the state from the process table."""
        with self._lock:
            alive = self.is_alive()
            if alive:
                self.state = ProcessState.RUNNING
            elif self.state in (ProcessState.RUNNING, ProcessState.STARTING):
                self._note("process disappeared")
                self.state = ProcessState.FAILED
            return self.state

    def start(self, argv: List[str]) -> StartResult:
        """Spawn detached, wait the grace period, then verify."""
        with self._lock:
            self.argv = list(argv)
            self.state = ProcessState.STARTING
            self._note(f"starting: {' '.join(self.argv)}")
            try:
                self.pid = self.runner.spawn(self.argv, self.log_path)
            except OSError as e:
                self.state = ProcessState.FAILED
                self._note(f"spawn failed: {e}")
                return StartResult(False, None, self.state, str(e))

            if self.grace_seconds > 0:
                self._sleep(self.grace_seconds)

            if self.is_alive():
                self.state = ProcessState.RUNNING
                self._note(f"running (spawned pid {self.pid})")
                return StartResult(True, self.pid, self.state)

            self.state = ProcessState.FAILED
            self._note("not running after grace period")
            return StartResult(False, self.pid, self.state, f"{self.process_name} exited during startup")

    def stop(self) -> None:
        with self._lock:
            best_effort(self.runner, commands.pkill_kill(self.process_name), expected=["no_such_process"])
            self.state = ProcessState.STOPPED
            self.pid = None
            self._note("stopped")
