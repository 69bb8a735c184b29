"""Utility exports for filesystem and concurrency helpers."""

from sitebox_orchestrator.utils.concurrency import (
    CancellationToken,
    KeyedLock,
    poll_until,
    run_with_timeout,
)
from sitebox_orchestrator.utils.fs import (
    atomic_write,
    remove_stale_temp_files,
    safe_delete,
)

__all__ = [
    "CancellationToken",
    "KeyedLock",
    "atomic_write",
    "poll_until",
    "remove_stale_temp_files",
    "run_with_timeout",
    "safe_delete",
]
