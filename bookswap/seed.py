"""
Bootstrap a school and its first administrator.

Usage:
    python -m bookswap.seed --school "Northside High" --domain northside.edu \
        --admin-email principal@northside.edu --student-id A-0001 \
        --first-name Pat --last-name Principal
"""
import logging
import sys
from typing import Optional

from bookswap import directory
from bookswap.db import db, init_db
from bookswap.errors import BookSwapError
from bookswap.models import AppRole, ProfileCreate, StudentCreate
from bookswap.settings import settings

logger = logging.getLogger(__name__)


def seed_school(
    school_name: str,
    domain: str,
    admin_email: str,
    student_id_num: str,
    first_name: str,
    last_name: str,
    path: Optional[str] = None,
) -> dict:
    """Create the school, register the admin, sign them up and grant the admin role, all or nothing."""
    init_db(path)
    with db(path) as c:
        school = directory.create_school(c, school_name, domain)
        directory.add_student(
            c,
            school["id"],
            StudentCreate(
                student_id_num=student_id_num,
                first_name=first_name,
                last_name=last_name,
                student_email=admin_email,
            ),
        )
        admin = directory.create_profile(c, ProfileCreate(email=admin_email, student_id_num=student_id_num))
        directory.set_role(c, admin["id"], AppRole.ADMIN)
    logger.info(f"Seeded school {school['id']} ({school['domain']}) with admin {admin['id']}")
    return {"school": school, "admin": admin}


def _arg(name: str) -> Optional[str]:
    if name in sys.argv:
        idx = sys.argv.index(name)
        if idx + 1 < len(sys.argv):
            return sys.argv[idx + 1]
    return None


if __name__ == "__main__":
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    names = ["--school", "--domain", "--admin-email", "--student-id", "--first-name", "--last-name"]
    values = [_arg(n) for n in names]
    missing = [n for n, v in zip(names, values) if not v]
    if missing:
        print(f"Missing arguments: {' '.join(missing)}")
        print(__doc__)
        sys.exit(2)
    try:
        result = seed_school(*values)
    except BookSwapError as e:
        print(f"Seeding failed: {e.message}")
        sys.exit(1)
    print(f"School {result['school']['name']} ready; admin user id {result['admin']['id']} ({result['admin']['email']})")
