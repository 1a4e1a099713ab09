"""Process memory probing and cleanup."""

from __future__ import annotations

import gc
import logging
import os
import sys
from typing import Callable, Iterable, List, Optional

logger = logging.getLogger("callscribe")

MEMORY_CEILING_MB = 150.0


def resident_memory_mb() -> float:
    """Resident set size of this process in MB."""
    try:
        with open("/proc/self/statm", "r", encoding="ascii") as handle:
            resident_pages = int(handle.read().split()[1])
        return resident_pages * os.sysconf("SC_PAGE_SIZE") / (1024 * 1024)
    except (OSError, ValueError, IndexError, AttributeError):
        pass
    try:
        import resource
    except ImportError:  # pragma: no cover - windows
        return 0.0
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is bytes on macOS and KB elsewhere
    if sys.platform == "darwin":
        return peak / (1024 * 1024)
    return peak / 1024


def available_memory_mb() -> Optional[float]:
    try:
        with open("/proc/meminfo", "r", encoding="ascii") as handle:
            for line in handle:
                if line.startswith("MemAvailable:"):
                    return int(line.split()[1]) / 1024
    except (OSError, ValueError, IndexError):
        return None
    return None


class MemoryGuard:
    """Checks resident memory against a ceiling and runs cleanup hooks."""

    def __init__(
        self,
        probe: Callable[[], float] = resident_memory_mb,
        ceiling_mb: float = MEMORY_CEILING_MB,
        cleanup_hooks: Optional[Iterable[Callable[[], None]]] = None,
    ) -> None:
        self._probe = probe
        self.ceiling_mb = ceiling_mb
        self._hooks: List[Callable[[], None]] = list(cleanup_hooks or [])

    def add_cleanup_hook(self, hook: Callable[[], None]) -> None:
        self._hooks.append(hook)

    def sample(self) -> float:
        return float(self._probe())

    def over_ceiling(self) -> tuple[bool, float]:
        usage = self.sample()
        return usage >= self.ceiling_mb, usage

    def cleanup(self) -> float:
        before = self.sample()
        gc.collect()
        for hook in self._hooks:
            try:
                hook()
            except Exception:
                logger.exception("Memory cleanup hook failed")
        after = self.sample()
        logger.info("Memory cleanup: %.1f MB -> %.1f MB", before, after)
        return after
