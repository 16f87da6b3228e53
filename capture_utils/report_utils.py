import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from tabulate import tabulate

from capture_utils.cookie_store import CookieStore
from capture_utils.cookie_utils import CookieRecord, format_timestamp

logger = logging.getLogger(__name__)

SESSION_COOKIE_LABEL = "Session cookie (no expiration)"


@dataclass(frozen=True)
class CaptureReport:
    """Final artifact of one capture run"""
    target_url: str
    captured_at: datetime
    total_count: int
    by_domain: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    all_records: List[CookieRecord] = field(default_factory=list)


def _domain_view(record: CookieRecord) -> Dict[str, Any]:
    view = {
        "name": record.name,
        "value": record.value,
        "expires": format_timestamp(record.expires) if record.expires else SESSION_COOKIE_LABEL,
        "path": record.path,
        "httpOnly": record.http_only,
        "secure": record.secure,
        "sameSite": record.same_site,
    }
    # value and expires are always present, unobserved attributes are left out
    return {key: value for key, value in view.items() if value is not None or key == "value"}


def record_to_dict(record: CookieRecord) -> Dict[str, Any]:
    """Serialise a record, leaving out fields that were never observed."""
    data = {
        "name": record.name,
        "value": record.value,
        "domain": record.domain,
        "path": record.path,
        "expires": format_timestamp(record.expires) if record.expires else None,
        "maxAge": record.max_age,
        "httpOnly": record.http_only,
        "secure": record.secure,
        "sameSite": record.same_site,
        "url": record.url,
        "sources": [source.value for source in record.sources],
    }
    return {key: value for key, value in data.items() if value is not None}


def build_report(target_url: str, store: CookieStore, captured_at: Optional[datetime] = None) -> CaptureReport:
    records = store.snapshot_all()
    by_domain: Dict[str, List[Dict[str, Any]]] = {}
    for record in records:
        by_domain.setdefault(record.domain, []).append(_domain_view(record))
    return CaptureReport(
        target_url=target_url,
        captured_at=captured_at or datetime.now(timezone.utc),
        total_count=len(records),
        by_domain=by_domain,
        all_records=records,
    )


def report_to_dict(report: CaptureReport) -> Dict[str, Any]:
    return {
        "url": report.target_url,
        "captureDate": format_timestamp(report.captured_at),
        "totalCookies": report.total_count,
        "cookiesByDomain": report.by_domain,
        "allCookies": [record_to_dict(record) for record in report.all_records],
    }


def save_report(report: CaptureReport, output_path) -> Path:
    """Write the report as JSON. Filesystem errors propagate to the caller."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(report_to_dict(report), f, indent=2)
    logger.info(f"✅ Saved {report.total_count} cookies to {output_path}")
    return output_path


def print_summary(report: CaptureReport, truncate_value: int = 40):
    rows = []
    for domain, cookies in report.by_domain.items():
        for cookie in cookies:
            value = cookie["value"] or ""
            if len(value) > truncate_value:
                value = value[:truncate_value] + "..."
            rows.append([domain, cookie["name"], value, cookie["expires"]])
    print(f"\nCookies captured from {report.target_url}: {report.total_count}")
    print(tabulate(rows, headers=["domain", "name", "value", "expires"], tablefmt="fancy_grid"))
