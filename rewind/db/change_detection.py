"""mtime-based change detection against the processed-file ledger."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from rewind.timeouts import FILE_STAT_TIMEOUT, run_with_timeout


@dataclass(frozen=True)
class ChangeDecision:
    process: bool
    mtime: float
    reason: str  # "new" | "modified" | "unchanged"


async def stat_mtime(path: Path) -> float:
    result: os.stat_result = await run_with_timeout(
        lambda: os.stat(path),
        FILE_STAT_TIMEOUT,
        f"File stat operation for {path}",
    )
    return result.st_mtime


async def needs_processing(file_path: Path, ledger: Any) -> ChangeDecision:
    """Decide whether ``file_path`` must be (re)ingested.

    Processes when the ledger has no row or its ``last_modified`` is strictly
    older than the file. Stat errors and timeouts propagate.
    """
    mtime = await stat_mtime(file_path)
    existing = await ledger.get(str(file_path))
    if existing is None:
        return ChangeDecision(process=True, mtime=mtime, reason="new")
    if float(existing["last_modified"]) < mtime:
        return ChangeDecision(process=True, mtime=mtime, reason="modified")
    return ChangeDecision(process=False, mtime=mtime, reason="unchanged")
