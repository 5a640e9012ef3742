"""
CSV exporter — Flat CSV of collected items plus a failure listing.
"""

from __future__ import annotations

import csv
import json
from pathlib import Path


def _flatten(item) -> dict:
    """One CSV row per item; nested values are JSON-encoded."""
    if not isinstance(item, dict):
        return {"value": item}
    return {
        k: json.dumps(v, default=str) if isinstance(v, (dict, list)) else v
        for k, v in item.items()
    }


def export_csv(result, output_dir: Path, run_id: str) -> list[Path]:
    """
    Write CSV files for the successes and the failures of a CollectorResult.

    Returns:
        List of created CSV file paths.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    created = []
    name = result.collector_name

    # --- Items CSV ---
    items_path = output_dir / f"{name}_{run_id}.csv"
    rows = [_flatten(item) for item in result.aggregate.successes]
    fieldnames: list[str] = []
    for row in rows:
        for key in row:
            if key not in fieldnames:
                fieldnames.append(key)

    with open(items_path, "w", newline="", encoding="utf-8-sig") as fh:
        writer = csv.DictWriter(fh, fieldnames=fieldnames or ["value"], restval="")
        writer.writeheader()
        for row in rows:
            writer.writerow(row)
    created.append(items_path)

    # --- Failures CSV ---
    failures_path = output_dir / f"{name}_failures_{run_id}.csv"
    FAILURE_FIELDS = ["target", "class", "status", "message"]

    with open(failures_path, "w", newline="", encoding="utf-8-sig") as fh:
        writer = csv.DictWriter(fh, fieldnames=FAILURE_FIELDS)
        writer.writeheader()
        for f in result.aggregate.failures:
            writer.writerow({
                "target": f.target,
                "class": f.failure_class.value,
                "status": f.status if f.status is not None else "",
                "message": f.message,
            })
    created.append(failures_path)

    return created
