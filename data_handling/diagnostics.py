"""
Diagnostics recording for Flat File Fusion.

Every stage of a retrieval reports what it did into one DiagnosticsRecorder
instead of keeping its own log; the recorder's snapshot becomes the
diagnostic fields of the returned DataCollection.
"""

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

from file_handling.fetcher import FetchRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiagnosticsSnapshot:
    """Immutable copy of everything a recorder collected."""
    download_diagnostics: Tuple[FetchRecord, ...] = ()
    processing_steps: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()


class DiagnosticsRecorder:
    """
    Append-only, thread-safe collector of steps, warnings and download records.

    A disabled recorder keeps nothing, which saves memory on large retrievals;
    messages are still sent to the module logger either way.
    """

    def __init__(self, enabled: bool = True, log: Optional[logging.Logger] = None):
        self.enabled = enabled
        self._log = log or logger
        self._downloads: List[FetchRecord] = []
        self._steps: List[str] = []
        self._warnings: List[str] = []
        self._lock = threading.Lock()

    def append_step(self, text: str) -> None:
        self._log.info(text)
        if self.enabled:
            with self._lock:
                self._steps.append(text)

    def append_warning(self, text: str) -> None:
        self._log.warning(text)
        if self.enabled:
            with self._lock:
                self._warnings.append(text)

    def append_download(self, record: FetchRecord) -> None:
        self._log.debug(f"Download record: {record.to_dict()}")
        if self.enabled:
            with self._lock:
                self._downloads.append(record)

    def extend(self, snapshot: DiagnosticsSnapshot) -> None:
        """Append everything from another recorder's snapshot, preserving its order."""
        if not self.enabled:
            return
        with self._lock:
            self._downloads.extend(snapshot.download_diagnostics)
            self._steps.extend(snapshot.processing_steps)
            self._warnings.extend(snapshot.warnings)

    def finalize(self) -> DiagnosticsSnapshot:
        """Return an immutable snapshot of the collected diagnostics."""
        with self._lock:
            return DiagnosticsSnapshot(
                download_diagnostics=tuple(self._downloads),
                processing_steps=tuple(self._steps),
                warnings=tuple(self._warnings)
            )
