"""Pure kernel domain helpers (ZERO I/O)."""

from etl_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = ["Clock", "DeterministicClock", "SystemClock"]
