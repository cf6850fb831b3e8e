import itertools
import shutil
from datetime import datetime, timedelta

import pytest

from zurihealth.database import PersistenceContext
from zurihealth.migrations.engine import MigrationEngine
from zurihealth.persistence.base import Actor
from zurihealth.persistence.repositories import Repositories


def sqlite_url(path) -> str:
    return f"sqlite:///{path}"


@pytest.fixture(scope="session")
def migrated_template(tmp_path_factory):
    """A fully migrated database file, built once and copied per test."""
    path = tmp_path_factory.mktemp("template") / "zurihealth.db"
    context = PersistenceContext(sqlite_url(path)).open()
    try:
        MigrationEngine(context.engine, retry_wait=0).upgrade()
    finally:
        context.close()
    return path


@pytest.fixture
def database_path(migrated_template, tmp_path):
    path = tmp_path / "zurihealth.db"
    shutil.copyfile(migrated_template, path)
    return path


@pytest.fixture
def context(database_path):
    context = PersistenceContext(sqlite_url(database_path)).open()
    yield context
    context.close()


@pytest.fixture
def blank_context(tmp_path):
    context = PersistenceContext(sqlite_url(tmp_path / "blank.db")).open()
    yield context
    context.close()


@pytest.fixture
def repos(context):
    return Repositories(context)


@pytest.fixture
def sequence():
    return itertools.count(1)


@pytest.fixture
def make_user(repos, sequence):
    def _make(role="patient", **overrides):
        n = next(sequence)
        data = {
            "first_name": "Test",
            "last_name": f"User{n}",
            "email": f"{role}{n}@zurihealth.mw",
            "phone": f"+2658800{n:05d}",
            "password": "Secret123!",
            "role": role,
        }
        data.update(overrides)
        return repos.users.create(data)
    return _make


@pytest.fixture
def admin(make_user):
    user = make_user("admin")
    return Actor(user_id=user.id, role=user.role)


@pytest.fixture
def make_doctor(repos, make_user, sequence):
    def _make(**overrides):
        user = make_user("doctor")
        data = {
            "user_id": user.id,
            "specialization": "General Practice",
            "license_number": f"LIC-{next(sequence):04d}",
        }
        data.update(overrides)
        return repos.doctors.create(data)
    return _make


@pytest.fixture
def make_patient(repos, make_user, sequence):
    def _make(**overrides):
        user = make_user("patient")
        data = {
            "user_id": user.id,
            "patient_number": f"PT-{next(sequence):04d}",
            "telephone": "+265888000111",
        }
        data.update(overrides)
        return repos.patients.create(data)
    return _make


@pytest.fixture
def make_appointment(repos, admin):
    def _make(patient, doctor, **overrides):
        data = {
            "patient_id": patient.id,
            "doctor_id": doctor.id,
            "date_time": datetime(2025, 3, 10, 9, 0) + timedelta(hours=overrides.pop("hour_offset", 0)),
            "reason": "Routine check-up",
        }
        data.update(overrides)
        return repos.appointments.create(data, actor=admin)
    return _make


@pytest.fixture
def make_medication(repos, sequence):
    def _make(**overrides):
        data = {
            "item_code": f"MED-{next(sequence):03d}",
            "name": "Amoxicillin",
            "category": "ANTIBIOTIC",
            "form": "CAPSULE",
            "strength": "500mg",
            "unit_price": "1.50",
        }
        data.update(overrides)
        return repos.medications.create(data)
    return _make
