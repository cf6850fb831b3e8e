import argparse
import sys
from typing import Dict, Optional

from zurihealth.config import settings
from zurihealth.database import PersistenceContext
from zurihealth.errors import UniquenessViolation, ZuriHealthError
from zurihealth.logging_setup import get_logger, setup_logging
from zurihealth.persistence.repositories import Repositories
from zurihealth.schema.vocabularies import VOCABULARIES

logger = get_logger("zurihealth.seed")

DEMO_DOMAIN = "zurihealth.mw"

BASELINE_DEPARTMENTS = (
    {"code": "GEN-MED", "name": "General Medicine", "description": "Outpatient and inpatient general care"},
    {"code": "LAB", "name": "Laboratory", "description": "Clinical laboratory services"},
    {"code": "PHAR", "name": "Pharmacy", "description": "Dispensing and medication management"},
    {"code": "CARD", "name": "Cardiology", "description": "Heart and circulation clinic"},
)


def demo_email(role: str) -> str:
    return f"{role}.demo@{DEMO_DOMAIN}"


def _seed_departments(repos: Repositories, session) -> int:
    created = 0
    for department in BASELINE_DEPARTMENTS:
        if repos.departments.find_one(lambda d: d.code == department["code"], session=session):
            continue
        repos.departments.create(department, session=session)
        created += 1
    return created


def _seed_profiles(repos: Repositories, session, user, index: int) -> None:
    if user.role == "doctor":
        department = repos.departments.get_by_code("GEN-MED", session=session)
        repos.doctors.create({
            "user_id": user.id,
            "department_id": department.id,
            "specialization": "General Practice",
            "license_number": f"MW-DEMO-{index:04d}",
            "qualifications": ["MBBS"],
            "experience_years": 5,
            "consultation_fee": "15000.00",
            "availability": [
                {"day": "monday", "start_time": "08:00", "end_time": "12:00"},
                {"day": "wednesday", "start_time": "13:00", "end_time": "17:00"},
            ],
        }, session=session)
    elif user.role == "patient":
        repos.patients.create({
            "user_id": user.id,
            "patient_number": f"PT-DEMO-{index:04d}",
            "gender": user.gender,
            "telephone": user.phone,
            "address": {"city": "Blantyre", "district": "Blantyre"},
        }, session=session)


def seed_baseline(context: PersistenceContext, demo_password: Optional[str] = None) -> Dict[str, int]:
    """Baseline departments plus one demo account per writable role.

    Safe to run repeatedly: departments are matched by code and accounts by email.
    """
    repos = Repositories(context)
    password = demo_password or settings.DEMO_PASSWORD
    summary = {"departments": 0, "users": 0}

    with context.transaction() as session:
        summary["departments"] = _seed_departments(repos, session)

        for index, role in enumerate(VOCABULARIES["user_role"].writable, start=1):
            email = demo_email(role)
            if repos.users.get_by_email(email, session=session):
                continue
            user = repos.users.create({
                "first_name": "Demo",
                "last_name": role.replace("-", " ").title(),
                "email": email,
                "phone": f"+26599900{index:04d}",
                "password": password,
                "role": role,
                "gender": "other",
            }, session=session)
            _seed_profiles(repos, session, user, index)
            summary["users"] += 1
            logger.info("Seeded demo %s account %s", role, email)

    logger.info("Baseline seed complete: %(departments)d department(s), %(users)d account(s)", summary)
    return summary


def create_admin_user(context: PersistenceContext, email, password, first_name, last_name, phone,
                      national_id=None, gender="male"):
    """Create a single administrator account, refusing duplicates."""
    repos = Repositories(context)
    with context.transaction() as session:
        if repos.users.get_by_email(email, session=session):
            raise UniquenessViolation(f"User with email {email} already exists", columns=["email"])
        user = repos.users.create({
            "first_name": first_name,
            "last_name": last_name,
            "email": email,
            "phone": phone,
            "password": password,
            "role": "admin",
            "gender": gender,
            "national_id": national_id,
        }, session=session)
    logger.info("Admin user created successfully: %s", user.email)
    return user


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Seed the record store")
    parser.add_argument("--database-url", default=None, help="Overrides DATABASE_URL")
    commands = parser.add_subparsers(dest="command", required=True)

    baseline = commands.add_parser("baseline", help="Seed departments and demo accounts")
    baseline.add_argument("--demo-password", default=None, help="Password for every demo account")

    admin = commands.add_parser("admin", help="Create an admin user")
    admin.add_argument("--email", required=True, help="Admin email address")
    admin.add_argument("--password", required=True, help="Admin password")
    admin.add_argument("--first-name", required=True, help="First name")
    admin.add_argument("--last-name", required=True, help="Last name")
    admin.add_argument("--phone", required=True, help="Phone number")
    admin.add_argument("--national-id", default=None, help="National ID")
    admin.add_argument("--gender", default="male", choices=["male", "female", "other"], help="Gender")

    args = parser.parse_args(argv)
    setup_logging(settings.LOG_LEVEL, settings.LOG_DIR or None)

    with PersistenceContext(args.database_url) as context:
        try:
            if args.command == "baseline":
                summary = seed_baseline(context, args.demo_password)
                print(f"Created {summary['departments']} department(s) and {summary['users']} account(s)")
            else:
                create_admin_user(
                    context,
                    email=args.email,
                    password=args.password,
                    first_name=args.first_name,
                    last_name=args.last_name,
                    phone=args.phone,
                    national_id=args.national_id,
                    gender=args.gender,
                )
                print(f"Admin user created successfully: {args.email}")
        except ZuriHealthError as exc:
            logger.error("Seeding failed: %s", exc.message)
            print(f"Error: {exc.message}", file=sys.stderr)
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
