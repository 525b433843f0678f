"""
PisoGate Session Enforcer
=========================

Periodic work driven by the session rows the billing layer maintains:

- sessions whose time ran out are revoked once and stamped expired_at
- tc objects left behind for clients without an active session are swept
- after a firewall rebuild, active sessions are granted again
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from loguru import logger

from .errors import PisoGateError
from .models import ClientSession


@dataclass
class SweepReport:
    expired: List[str] = field(default_factory=list)
    stale_cleaned: int = 0
    errors: List[str] = field(default_factory=list)


class SessionEnforcer:
    def __init__(self, store, access, limiter):
        self.store = store
        self.access = access
        self.limiter = limiter

    def _sessions(self) -> List[ClientSession]:
        sessions = []
        for row in self.store.list("sessions"):
            try:
                sessions.append(ClientSession.from_row(row))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed session row: {e}")
        return sessions

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or datetime.now()
        report = SweepReport()
        sessions = self._sessions()

        for session in sessions:
            if session.remaining_seconds > 0 or session.expired_at:
                continue
            try:
                self.access.revoke(session.mac, session.ip)
            except PisoGateError as e:
                logger.error(f"Failed to revoke expired session {session.mac}: {e}")
                report.errors.append(f"{session.mac}: {e}")
                continue
            self.store.update("sessions", session.mac, {"expired_at": now.isoformat()})
            report.expired.append(session.mac)
            logger.info(f"Session expired: {session.mac}")

        active_ips = [s.ip for s in sessions if s.is_active and s.ip]
        try:
            report.stale_cleaned = self.limiter.sweep_stale(active_ips)
        except PisoGateError as e:
            logger.error(f"Stale tc sweep failed: {e}")
            report.errors.append(f"tc sweep: {e}")
        return report

    def restore_grants(self) -> int:
        """Grant every active session again; returns how many succeeded."""
        granted = 0
        for session in self._sessions():
            if not session.is_active:
                continue
            try:
                self.access.grant(session.mac, session.ip)
                granted += 1
            except PisoGateError as e:
                logger.error(f"Failed to restore access for {session.mac}: {e}")
        if granted:
            logger.info(f"Restored access for {granted} active session(s)")
        return granted
