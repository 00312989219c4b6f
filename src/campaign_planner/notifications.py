"""User-facing advisories.

Advisories are non-blocking notices. Transient ones auto-dismiss in the UI;
persistent ones stay until dismissed and may carry a recovery action.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from campaign_planner.events import EventBus
from campaign_planner.utils.time import utc_now

logger = logging.getLogger(__name__)

AdvisoryLevel = Literal["info", "success", "warning", "error"]
AdvisoryAction = Literal["reset_and_reload", "export_backup"]

_LOG_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass(frozen=True)
class Advisory:
    level: AdvisoryLevel
    message: str
    source: str
    persistent: bool = False
    action: AdvisoryAction | None = None
    created_at: datetime | None = None


class AdvisoryBus(EventBus[Advisory]):
    """Event bus for advisories that also keeps a short history."""

    def __init__(self, history_size: int = 50) -> None:
        super().__init__("advisories")
        self._history: list[Advisory] = []
        self._history_size = history_size

    def advise(
        self,
        level: AdvisoryLevel,
        message: str,
        *,
        source: str,
        persistent: bool = False,
        action: AdvisoryAction | None = None,
    ) -> Advisory:
        advisory = Advisory(
            level=level,
            message=message,
            source=source,
            persistent=persistent,
            action=action,
            created_at=utc_now(),
        )
        logger.log(_LOG_LEVELS[level], "[%s] %s", source, message)
        self._history.append(advisory)
        del self._history[: -self._history_size]
        self.publish(advisory)
        return advisory

    @property
    def history(self) -> list[Advisory]:
        return list(self._history)
