import datetime as dt
import os
from typing import Any, Dict, List, Optional

import pandas as pd
import pytz

from fleetguard.logging_config import get_logger

logger = get_logger("reports", "reports.log")


def next_midnight(now: dt.datetime, tz_name: str) -> dt.datetime:
    """Next local midnight after now in tz_name, as an aware datetime."""
    tz = pytz.timezone(tz_name)
    today = now.astimezone(tz).date()
    return tz.localize(dt.datetime.combine(today + dt.timedelta(days=1), dt.time.min))


def seconds_until_midnight(now: dt.datetime, tz_name: str) -> float:
    return max(0.0, (next_midnight(now, tz_name) - now).total_seconds())


def snapshot_frame(records: List[Dict[str, Any]]) -> pd.DataFrame:
    df = pd.DataFrame.from_records(records)
    if not df.empty:
        df = df.sort_values(["current_points", "driver_name"], ascending=[True, True])
    return df


def export_snapshot_csv(records: List[Dict[str, Any]], export_dir: str, snapshot_date: dt.date) -> str:
    os.makedirs(export_dir, exist_ok=True)
    path = os.path.join(export_dir, f"driver_scores_{snapshot_date.isoformat()}.csv")
    snapshot_frame(records).to_csv(path, index=False)
    logger.info(f"[report] Snapshot exported to {path}")
    return path


async def run_daily_snapshot(scorer, gateway, snapshot_date: dt.date,
                             export_dir: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    End-of-day driver score snapshot:
    - flush whatever scores are still dirty
    - one snapshot row per known driver, with total violations
    - optional CSV export next to the database rows
    """
    await scorer.flush(gateway.upsert_driver_scores)

    records = scorer.snapshot_records(snapshot_date)
    if not records:
        logger.info(f"[report] No drivers to snapshot for {snapshot_date}")
        return records

    await gateway.write_score_snapshots(records)
    logger.info(f"[report] Stored {len(records)} driver snapshots for {snapshot_date}")

    if export_dir:
        try:
            export_snapshot_csv(records, export_dir, snapshot_date)
        except OSError as e:
            logger.exception(f"[report] CSV export failed: {e}")

    return records
