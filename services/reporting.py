"""
Report generation service module.
Builds template contexts from the repository and renders them to HTML with
Jinja2. Supported reports: the period activity summary, the unclaimed-bodies
follow-up list and the dashboard snapshot.
"""
import logging
import os
from datetime import date, datetime, timedelta

from jinja2 import Environment, FileSystemLoader, select_autoescape

from repositories.db_repository import DBService

logger = logging.getLogger(__name__)

# Jinja environment pointing to the project templates folder
env = Environment(
    loader=FileSystemLoader(os.path.join(os.path.dirname(__file__), "..", "templates")),
    autoescape=select_autoescape(["html"]),
)

TEMPLATE_MAP = {
    "period_summary": "period_report.html",
    "unclaimed": "unclaimed_report.html",
    "dashboard": "dashboard_report.html",
}

ORGANIZATION = "Hospital Mortuary Services"


class ReportError(Exception):
    pass


def _format_date(d):
    if not d:
        return ""
    if isinstance(d, datetime):
        return d.strftime("%Y/%m/%d %H:%M")
    return d.strftime("%Y/%m/%d")


def _humanize(value: str) -> str:
    return value.replace("_", " ").title() if value else ""


def _common_context():
    return {
        "generated_at": datetime.now().strftime("%Y/%m/%d %H:%M"),
        "organization": ORGANIZATION,
    }


def _patient_row(patient):
    return {
        "id": patient.id,
        "mr_number": patient.mr_number,
        "full_name": patient.full_name,
        "ward_from": patient.ward_from,
        "status": _humanize(patient.status),
        "registration_date": _format_date(patient.registration_date),
    }


def fetch_period_summary(start: date, end: date, db_service: DBService):
    """Prepare context for the period activity report."""
    if end < start:
        raise ReportError("Report period ends before it starts")
    summary = db_service.get_period_summary(start, end)
    return {
        **_common_context(),
        "period_start": _format_date(summary["period_start"]),
        "period_end": _format_date(summary["period_end"]),
        "totals": {
            "Registrations": summary["total_patients"],
            "Release requests": summary["total_releases"],
            "Bodies released": summary["released_bodies"],
            "Postmortems": summary["postmortems"],
            "Unclaimed": summary["unclaimed_bodies"],
        },
        "by_status": [{"name": _humanize(k), "count": v} for k, v in sorted(summary["by_status"].items())],
        "by_ward": [{"name": k, "count": v} for k, v in sorted(summary["by_ward"].items())],
        "release_status": [{"name": _humanize(k), "count": v} for k, v in summary["release_status"].items()],
        "postmortem_status": [{"name": _humanize(k), "count": v} for k, v in sorted(summary["postmortem_status"].items())],
    }


def fetch_unclaimed(db_service: DBService, today: date = None):
    """Prepare context for the unclaimed-bodies follow-up report."""
    rows = db_service.get_unclaimed_bodies(today)
    buckets = {"recent": [], "approaching": [], "critical": []}
    for row in rows:
        entry = _patient_row(row["patient"])
        entry["days_unclaimed"] = row["days_unclaimed"]
        buckets[row["bucket"]].append(entry)
    return {
        **_common_context(),
        "total": len(rows),
        "critical": buckets["critical"],
        "approaching": buckets["approaching"],
        "recent": buckets["recent"],
    }


def fetch_dashboard(db_service: DBService):
    stats = db_service.get_dashboard_stats()
    return {
        **_common_context(),
        "occupied": stats["occupied"],
        "available": stats["available"],
        "pending_releases": stats["pending_releases"],
        "unclaimed": stats["unclaimed"],
        "recent_registrations": [_patient_row(p) for p in stats["recent_registrations"]],
        "pending_tasks": [
            {"title": t.title, "priority": _humanize(t.priority), "due_date": _format_date(t.due_date)}
            for t in stats["pending_tasks"]
        ],
        "alerts": [
            {"title": a.title, "severity": _humanize(a.severity), "message": a.message}
            for a in stats["alerts"]
        ],
    }


def _render_html(report_type: str, ctx: dict) -> str:
    template_name = TEMPLATE_MAP.get(report_type)
    if not template_name:
        raise ReportError(f"No template configured for report type {report_type!r}")
    tmpl = env.get_template(template_name)
    return tmpl.render(**ctx)


def generate_report(report_type: str, output_path: str = None, db_service: DBService = None,
                    start: date = None, end: date = None, today: date = None):
    """Render a report to HTML.

    Args:
        report_type: 'period_summary'|'unclaimed'|'dashboard'
        output_path: file to write the HTML to. If None, the HTML is returned.
        start, end: reporting period for 'period_summary' (defaults to the last 30 days).
        today: reference day for 'unclaimed' (defaults to the current date).
    """
    db = db_service or DBService()

    if report_type == "period_summary":
        end = end or date.today()
        start = start or end - timedelta(days=30)
        ctx = fetch_period_summary(start, end, db)
    elif report_type == "unclaimed":
        ctx = fetch_unclaimed(db, today)
    elif report_type == "dashboard":
        ctx = fetch_dashboard(db)
    else:
        raise ReportError(f"Unknown report type {report_type!r}")

    html = _render_html(report_type, ctx)
    if not output_path:
        return html

    try:
        with open(output_path, "w", encoding="utf-8") as fh:
            fh.write(html)
    except OSError as e:
        raise ReportError(f"Could not write report to {output_path}: {e}") from e
    logger.info("Wrote %s report to %s", report_type, output_path)
    return output_path
