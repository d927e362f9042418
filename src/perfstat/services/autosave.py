from __future__ import annotations

import logging
import threading
from typing import Optional

from perfstat.domain.models import StatisticStatus
from perfstat.exceptions import PerfStatError
from perfstat.services.forms import PerformanceFormService

logger = logging.getLogger(__name__)


class AutoSaver:
    """
    Periodically saves every dirty open session as DRAFT.
    Failures are logged and never reach the user; the session stays dirty for the next round.
    """

    def __init__(self, service: PerformanceFormService, sessions, interval_seconds: float = 30.0):
        self.service = service
        self.sessions = sessions
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> int:
        saved = 0
        for session_id, session in self.sessions.items():
            if not session.dirty:
                continue
            try:
                self.service.save(session, StatisticStatus.DRAFT)
                saved += 1
            except PerfStatError as exc:
                logger.error(
                    "Auto-save failed",
                    extra={"session_id": session_id, "topic_id": session.topic.id, "error": str(exc)},
                )
        if saved:
            logger.debug("Auto-save round complete", extra={"saved": saved})
        return saved

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception:
                logger.exception("Auto-save round crashed; retrying next interval")

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="perfstat-autosave", daemon=True)
        self._thread.start()
        logger.info("Auto-save started", extra={"interval_seconds": self.interval_seconds})

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=self.interval_seconds)
        self._thread = None
