"""Manual alert source (CLI and operator triggers)."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from pagerbuddy.core.models import AlertCandidate, AlertSource, InformationContent
from pagerbuddy.core.ports import CandidateCallback

LOGGER = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ManualAlertSource:
    def __init__(self, source: AlertSource, clock: Callable[[], datetime] = _utc_now) -> None:
        self._source = source
        self._clock = clock
        self._emit: Optional[CandidateCallback] = None

    @property
    def source(self) -> AlertSource:
        return self._source

    async def start(self, emit: CandidateCallback) -> None:
        self._emit = emit
        self._source.report_status(self._clock())

    async def stop(self) -> None:
        self._emit = None

    async def trigger(self, unit_code: int, keyword: str = "", message: str = "", location: str = "") -> object:
        """Emit a COMPLETE candidate for ``unit_code`` stamped with the current time."""

        if self._emit is None:
            raise RuntimeError("Manual source is not started")
        candidate = AlertCandidate(
            unit_code=unit_code,
            timestamp=self._clock(),
            information_content=InformationContent.COMPLETE,
            source=self._source,
            keyword=keyword,
            location=location,
            message=message,
        )
        LOGGER.info("Manual alert triggered for unit %s", unit_code)
        return await self._emit(candidate)
