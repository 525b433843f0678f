"""
PisoGate Errors
===============

Exception hierarchy for the enforcement engine.

Cleanup failures never raise (see runner.best_effort); provisioning
failures surface as one of these.
"""

from typing import List, Optional


class PisoGateError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(PisoGateError, ValueError):
    """Input rejected before any command was built."""


class CommandError(PisoGateError):
    """An external command exited non-zero or timed out."""

    def __init__(self, argv: List[str], returncode: int,
                 stdout: str = "", stderr: str = "", timed_out: bool = False):
        self.argv = list(argv)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.timed_out = timed_out
        detail = (stderr or stdout or "").strip()
        if timed_out:
            detail = "timed out" + (f": {detail}" if detail else "")
        super().__init__(f"{' '.join(self.argv)} failed ({returncode}): {detail}")


class ProvisioningError(PisoGateError):
    """Creating a device, writing a file or starting a service failed."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class FirewallError(ProvisioningError):
    """One or more baseline firewall rules could not be installed."""

    def __init__(self, failures: List[str]):
        self.failures = list(failures)
        super().__init__(f"{len(self.failures)} firewall rule(s) failed: " + "; ".join(self.failures))


class PPPoEStartError(ProvisioningError):
    """pppoe-server did not come up; message carries the diagnosis."""
