"""Abuse reports filed by users and triaged by administrators."""
import logging
import sqlite3
from typing import List

from bookswap import catalog, directory
from bookswap.db import utcnow
from bookswap.errors import NotFound
from bookswap.models import ReportCreate, ReportStatus, ReportTarget

logger = logging.getLogger(__name__)


def _check_target(c: sqlite3.Connection, target_type: ReportTarget, target_id: int) -> None:
    if target_type == ReportTarget.TEXTBOOK:
        catalog.get_textbook(c, target_id)
    elif target_type == ReportTarget.USER:
        directory.get_profile(c, target_id)
    elif target_type == ReportTarget.MESSAGE:
        if not c.execute("SELECT 1 FROM messages WHERE id=?", (target_id,)).fetchone():
            raise NotFound("Message not found")


def create_report(c: sqlite3.Connection, reporter_id: int, payload: ReportCreate) -> dict:
    _check_target(c, payload.target_type, payload.target_id)
    cur = c.execute(
        "INSERT INTO reports(reporter_id, target_type, target_id, reason, status, created_at) VALUES(?,?,?,?,?,?)",
        (reporter_id, payload.target_type.value, payload.target_id, payload.reason,
         ReportStatus.PENDING.value, utcnow()),
    )
    logger.info(f"User {reporter_id} reported {payload.target_type.value} {payload.target_id}")
    return get_report(c, cur.lastrowid)


def get_report(c: sqlite3.Connection, report_id: int) -> dict:
    row = c.execute("SELECT * FROM reports WHERE id=?", (report_id,)).fetchone()
    if not row:
        raise NotFound("Report not found")
    return dict(row)


def list_reports(c: sqlite3.Connection) -> List[dict]:
    rows = c.execute(
        "SELECT r.*, p.first_name AS reporter_first_name, p.last_name AS reporter_last_name, "
        "p.email AS reporter_email FROM reports r JOIN profiles p ON p.id = r.reporter_id "
        "ORDER BY r.created_at DESC, r.id DESC"
    ).fetchall()
    return [dict(r) for r in rows]


def update_report_status(c: sqlite3.Connection, report_id: int, status: ReportStatus) -> dict:
    cur = c.execute("UPDATE reports SET status=? WHERE id=?", (ReportStatus(status).value, report_id))
    if cur.rowcount == 0:
        raise NotFound("Report not found")
    logger.info(f"Report {report_id} marked {ReportStatus(status).value}")
    return get_report(c, report_id)
