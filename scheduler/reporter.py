import os
from datetime import datetime, timezone
from ingestion.health import classify_health, get_health_summary, today_key
from ingestion.registry import list_sources
from utils.alerts import send_alert
import pandas as pd
import logging

logger = logging.getLogger("reporter")
logger.setLevel(logging.INFO)

REPORT_DIR = os.getenv("REPORT_DIR", "./reports")
ALERT_STATUSES = ("degraded", "failing")
REPORT_COLUMNS = [
    "source_id",
    "source_name",
    "enabled",
    "status",
    "failure_rate",
    "fetch_attempts",
    "fetch_failures",
    "parse_attempts",
    "parse_failures",
    "listings_found",
    "new_listings",
    "delisted_listings",
    "avg_fetch_time_ms",
    "last_error",
]


async def build_health_rows():
    """
    One report row per registered source for today.

    Sources without a health row today are reported with zero counters and
    classified healthy (or disabled).
    """
    today = today_key()
    latest = {r["source_id"]: r for r in await get_health_summary(days=1) if r["date"] == today}

    rows = []
    for source in await list_sources():
        health = latest.get(source.id) or {}
        row = {col: health.get(col, 0) for col in REPORT_COLUMNS}
        row.update(
            source_id=source.id,
            source_name=source.name,
            enabled=source.enabled,
            status=classify_health(health or None, source.enabled),
            last_error=health.get("last_error"),
        )
        rows.append(row)
    return rows


async def generate_health_report(report_dir=None):
    """
    Write today's source health report and alert on unhealthy sources.

    Builds a pandas DataFrame of per-source counters and classifications,
    writes it as JSON and CSV, then emails the operator when at least one
    enabled source is degraded or failing.

    Args:
        report_dir (str, optional): Output directory. Defaults to REPORT_DIR

    Returns:
        dict:
            - json_path / csv_path (str): Written report files
            - unhealthy (list[str]): Ids of degraded or failing sources
            - alert_sent (bool)

    Output Files:
        - {report_dir}/source_health_{YYYY-MM-DD}.json
        - {report_dir}/source_health_{YYYY-MM-DD}.csv
    """
    report_dir = report_dir or REPORT_DIR
    os.makedirs(report_dir, exist_ok=True)

    rows = await build_health_rows()
    df = pd.DataFrame(rows, columns=REPORT_COLUMNS)

    filename_base = f"source_health_{today_key()}"
    json_path = os.path.join(report_dir, f"{filename_base}.json")
    csv_path = os.path.join(report_dir, f"{filename_base}.csv")
    df.to_json(json_path, orient="records", indent=2)
    df.to_csv(csv_path, index=False)
    logger.info(f"Generated source health report: {json_path}, {csv_path}")

    unhealthy = df[df["status"].isin(ALERT_STATUSES)]
    if unhealthy.empty:
        logger.info("All enabled sources healthy, no alert sent")
        return {
            "json_path": json_path,
            "csv_path": csv_path,
            "unhealthy": [],
            "alert_sent": False,
        }

    subject = f"[Ingestion] {len(unhealthy)} source(s) need attention"
    body = (
        "Hello,\n\n"
        f"{len(unhealthy)} ingestion source(s) are degraded or failing.\n"
        f"Report generated at: {datetime.now(timezone.utc).isoformat()}\n\n"
        "Summary:\n"
    )
    for row in unhealthy.itertuples():
        body += (
            f"- {row.source_id}: {row.status} "
            f"(failure rate {row.failure_rate:.0%}, last error: {row.last_error or 'n/a'})\n"
        )
    body += "\nAttached are the JSON and CSV reports.\n"

    sent = send_alert(subject, body, attachments=[json_path, csv_path])
    return {
        "json_path": json_path,
        "csv_path": csv_path,
        "unhealthy": unhealthy["source_id"].tolist(),
        "alert_sent": sent,
    }
