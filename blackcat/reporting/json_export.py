"""
JSON exporter — Writes a collector run (summary, failures, items) to disk.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .. import __version__


def export_json(
    result,
    output_dir: Path,
    run_id: str,
    cache_stats: Optional[dict] = None,
) -> Path:
    """
    Write a CollectorResult to a JSON file.

    Returns:
        Path to the created JSON file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    payload = {
        "metadata": {
            "tool": "BlackCat",
            "version": __version__,
            "run_id": run_id,
            "generated_utc": datetime.now(timezone.utc).isoformat(),
            **result.metadata,
        },
        "summary": result.aggregate.to_dict(),
        "items": result.aggregate.successes,
    }
    if cache_stats is not None:
        payload["cache"] = cache_stats

    filepath = output_dir / f"{result.collector_name}_{run_id}.json"

    with open(filepath, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, default=str, ensure_ascii=False)

    return filepath
