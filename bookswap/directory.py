"""Profiles, schools, the student registry, roles and pickup locations."""
import logging
import sqlite3
from typing import List, Optional

from bookswap.db import utcnow
from bookswap.errors import NotAuthorized, NotFound, ValidationFailed
from bookswap.models import AppRole, ProfileCreate, ReportStatus, StudentCreate

logger = logging.getLogger(__name__)


def create_school(c: sqlite3.Connection, name: str, domain: str) -> dict:
    domain = domain.strip().lower()
    if c.execute("SELECT 1 FROM schools WHERE domain=?", (domain,)).fetchone():
        raise ValidationFailed(f"A school with domain {domain} already exists")
    cur = c.execute(
        "INSERT INTO schools(name, domain, created_at) VALUES(?,?,?)",
        (name.strip(), domain, utcnow()),
    )
    logger.info(f"Created school {cur.lastrowid} for @{domain}")
    return get_school(c, cur.lastrowid)


def get_school(c: sqlite3.Connection, school_id: int) -> dict:
    row = c.execute("SELECT * FROM schools WHERE id=?", (school_id,)).fetchone()
    if not row:
        raise NotFound("School not found")
    return dict(row)


def get_school_by_domain(c: sqlite3.Connection, domain: str) -> Optional[dict]:
    row = c.execute("SELECT * FROM schools WHERE domain=?", (domain.strip().lower(),)).fetchone()
    return dict(row) if row else None


# ------------------------
# Student registry
# ------------------------
def add_student(
    c: sqlite3.Connection, school_id: int, payload: StudentCreate, created_by: Optional[int] = None
) -> dict:
    school = get_school(c, school_id)
    if payload.student_email.split("@")[-1] != school["domain"]:
        raise ValidationFailed(f"Student email must use the school domain @{school['domain']}")
    if c.execute(
        "SELECT 1 FROM student_registry WHERE student_email=? OR (school_id=? AND student_id_num=?)",
        (payload.student_email, school_id, payload.student_id_num),
    ).fetchone():
        raise ValidationFailed("A student with this ID or email is already registered")
    cur = c.execute(
        "INSERT INTO student_registry(school_id, student_id_num, first_name, last_name, student_email, "
        "is_active, created_by, created_at) VALUES(?,?,?,?,?,1,?,?)",
        (school_id, payload.student_id_num, payload.first_name, payload.last_name,
         payload.student_email, created_by, utcnow()),
    )
    return get_student(c, cur.lastrowid)


def get_student(c: sqlite3.Connection, entry_id: int) -> dict:
    row = c.execute("SELECT * FROM student_registry WHERE id=?", (entry_id,)).fetchone()
    if not row:
        raise NotFound("Registry entry not found")
    entry = dict(row)
    entry["is_active"] = bool(entry["is_active"])
    return entry


def list_registry(c: sqlite3.Connection, school_id: int) -> List[dict]:
    rows = c.execute(
        "SELECT * FROM student_registry WHERE school_id=? ORDER BY last_name, first_name, id", (school_id,)
    ).fetchall()
    return [{**dict(r), "is_active": bool(r["is_active"])} for r in rows]


def set_student_active(c: sqlite3.Connection, entry_id: int, is_active: bool) -> dict:
    get_student(c, entry_id)
    c.execute("UPDATE student_registry SET is_active=? WHERE id=?", (1 if is_active else 0, entry_id))
    logger.info(f"Registry entry {entry_id} {'activated' if is_active else 'deactivated'}")
    return get_student(c, entry_id)


# ------------------------
# Profiles
# ------------------------
def create_profile(c: sqlite3.Connection, payload: ProfileCreate) -> dict:
    """
    Sign up a student. The school comes from the email domain and an active
    registry entry must match the student id, email and school.
    """
    domain = payload.email.split("@")[1]
    school = get_school_by_domain(c, domain)
    if not school:
        raise ValidationFailed(f"Email domain @{domain} is not registered. Please use your official school email.")
    student = c.execute(
        "SELECT * FROM student_registry WHERE student_id_num=? AND student_email=? AND school_id=? AND is_active=1",
        (payload.student_id_num, payload.email, school["id"]),
    ).fetchone()
    if not student:
        logger.info(f"Sign-up refused for {payload.email}: no active registry entry")
        raise NotAuthorized("We couldn't verify your Student ID and email. Please contact your school admin.")
    if c.execute("SELECT 1 FROM profiles WHERE email=?", (payload.email,)).fetchone():
        raise ValidationFailed("A profile with this email already exists")
    cur = c.execute(
        "INSERT INTO profiles(email, first_name, last_name, school_id, graduation_year, created_at) "
        "VALUES(?,?,?,?,?,?)",
        (payload.email, payload.first_name or student["first_name"], payload.last_name or student["last_name"],
         school["id"], payload.graduation_year, utcnow()),
    )
    user_id = cur.lastrowid
    c.execute(
        "INSERT INTO user_roles(user_id, role, created_at) VALUES(?,?,?)",
        (user_id, AppRole.STUDENT.value, utcnow()),
    )
    logger.info(f"Created profile {user_id} for school {school['id']}")
    return get_profile(c, user_id)


def get_profile(c: sqlite3.Connection, user_id: int) -> dict:
    row = c.execute("SELECT * FROM profiles WHERE id=?", (user_id,)).fetchone()
    if not row:
        raise NotFound("Profile not found")
    return dict(row)


def list_profiles(c: sqlite3.Connection, school_id: Optional[int] = None) -> List[dict]:
    """Profiles with their roles, oldest first."""
    sql = "SELECT * FROM profiles"
    params: list = []
    if school_id is not None:
        sql += " WHERE school_id=?"
        params.append(school_id)
    rows = c.execute(sql + " ORDER BY id", params).fetchall()
    return [{**dict(r), "roles": get_roles(c, r["id"])} for r in rows]


def admin_stats(c: sqlite3.Connection) -> dict:
    def count(sql, params=()):
        return c.execute(sql, params).fetchone()[0]

    return {
        "active_students": count("SELECT COUNT(*) FROM student_registry WHERE is_active=1"),
        "total_users": count("SELECT COUNT(*) FROM profiles"),
        "open_reports": count("SELECT COUNT(*) FROM reports WHERE status=?", (ReportStatus.PENDING.value,)),
        "total_textbooks": count("SELECT COUNT(*) FROM textbooks"),
    }


def get_roles(c: sqlite3.Connection, user_id: int) -> List[str]:
    rows = c.execute("SELECT role FROM user_roles WHERE user_id=? ORDER BY role", (user_id,)).fetchall()
    return [r["role"] for r in rows]


def has_role(c: sqlite3.Connection, user_id: int, role: AppRole) -> bool:
    row = c.execute(
        "SELECT 1 FROM user_roles WHERE user_id=? AND role=?",
        (user_id, AppRole(role).value),
    ).fetchone()
    return row is not None


def require_admin(c: sqlite3.Connection, user_id: int) -> None:
    if not has_role(c, user_id, AppRole.ADMIN):
        raise NotAuthorized("Admin privileges required")


def set_role(c: sqlite3.Connection, user_id: int, role: AppRole) -> List[str]:
    """Replace every role the user holds with ``role``."""
    get_profile(c, user_id)
    c.execute("DELETE FROM user_roles WHERE user_id=?", (user_id,))
    c.execute(
        "INSERT INTO user_roles(user_id, role, created_at) VALUES(?,?,?)",
        (user_id, AppRole(role).value, utcnow()),
    )
    logger.info(f"User {user_id} role set to {AppRole(role).value}")
    return get_roles(c, user_id)


def create_location(c: sqlite3.Connection, school_id: int, name: str, label: Optional[str] = None) -> dict:
    get_school(c, school_id)
    cur = c.execute(
        "INSERT INTO locations(school_id, name, label, created_at) VALUES(?,?,?,?)",
        (school_id, name.strip(), label.strip() if label else None, utcnow()),
    )
    return get_location(c, cur.lastrowid)


def get_location(c: sqlite3.Connection, location_id: int) -> dict:
    row = c.execute("SELECT * FROM locations WHERE id=?", (location_id,)).fetchone()
    if not row:
        raise NotFound("Location not found")
    return dict(row)


def list_locations(c: sqlite3.Connection, school_id: int) -> List[dict]:
    rows = c.execute("SELECT * FROM locations WHERE school_id=? ORDER BY name", (school_id,)).fetchall()
    return [dict(r) for r in rows]
