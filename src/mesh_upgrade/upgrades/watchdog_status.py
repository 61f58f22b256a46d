"""
Watchdog status file.

A single JSON document in the shared data directory that records the last
known upgrade status. It is readable by the upgrader sidecar and by a freshly
started service process without opening the history database.

Format:
    {
        "upgradeId": "5b1c...",
        "status": "restarting",
        "targetVersion": "2.15.0",
        "message": "Recreating container",
        "timestamp": 1760000000.0
    }
"""

from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path

from pydantic import ValidationError

from mesh_upgrade.logging import get_logger
from mesh_upgrade.upgrades.models import WatchdogStatusRecord
from mesh_upgrade.upgrades.operations import atomic_write_json, read_json

logger = get_logger(__name__)

# Written by the sidecar while it is idle and waiting for a trigger
READY_STATUS = "ready"


class WatchdogStatusStore:
    """Reads and atomically writes the watchdog status file."""

    def __init__(
        self,
        path: str | Path,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = Path(path)
        self._clock = clock

    def write(
        self,
        status: str,
        *,
        upgrade_id: str | None = None,
        target_version: str | None = None,
        message: str = "",
    ) -> WatchdogStatusRecord:
        """
        Replace the status file with a new record.

        The file is fsynced and renamed into place before this returns.
        """
        record = WatchdogStatusRecord(
            upgrade_id=upgrade_id,
            status=status,
            target_version=target_version,
            message=message,
            timestamp=self._clock(),
        )
        atomic_write_json(self.path, record.to_dict())
        logger.debug(
            "Watchdog status written",
            extra={"upgrade_id": upgrade_id, "status": status},
        )
        return record

    def read(self) -> WatchdogStatusRecord | None:
        """Return the current record, or None when missing or unreadable."""
        data = read_json(self.path)
        if data is None:
            return None

        try:
            return WatchdogStatusRecord.model_validate(data)
        except ValidationError as e:
            logger.warning(
                "Ignoring malformed watchdog status file",
                extra={"path": str(self.path), "error": str(e)},
            )
            return None

    def age_seconds(self) -> float | None:
        """Seconds since the last record was written, or None if there is none."""
        record = self.read()
        if record is None:
            return None
        return max(0.0, self._clock() - record.timestamp)
