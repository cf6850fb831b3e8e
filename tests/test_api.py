import pytest
from fastapi.testclient import TestClient

import migrate
from main import STATUS_CODES, create_app
from zurihealth.config import Settings
from zurihealth.errors import MigrationConflictError, NotFoundError
from zurihealth.migrations.versions import MIGRATIONS


def sqlite_url(path):
    return f"sqlite:///{path}"


def make_settings(path, **overrides):
    return Settings(DATABASE_URL=sqlite_url(path), CORS_ORIGINS=["http://testserver"], **overrides)


def test_health_and_schema_status(database_path):
    with TestClient(create_app(make_settings(database_path))) as client:
        health = client.get("/health")
        assert health.status_code == 200
        assert health.json()["status"] == "up"

        response = client.get("/api/v1/schema/status")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["pending"] == []
        assert data["drift"] == []
        assert len(data["migrations"]) == len(MIGRATIONS)


def test_startup_refuses_unmigrated_database(tmp_path):
    app = create_app(make_settings(tmp_path / "empty.db"))
    with pytest.raises(MigrationConflictError):
        with TestClient(app):
            pass


def test_schema_status_without_verification(tmp_path):
    app = create_app(make_settings(tmp_path / "empty.db", VERIFY_SCHEMA_ON_STARTUP=False))
    with TestClient(app) as client:
        data = client.get("/api/v1/schema/status").json()["data"]
    assert len(data["pending"]) == len(MIGRATIONS)


def test_domain_errors_use_the_envelope(database_path):
    app = create_app(make_settings(database_path))

    @app.get("/missing")
    def missing():
        raise NotFoundError("Bill", "BILL-20250310-00000000")

    with TestClient(app) as client:
        response = client.get("/missing")
    assert response.status_code == STATUS_CODES["not_found"] == 404
    assert response.json() == {
        "ok": False,
        "error": {"code": "not_found", "message": "Bill BILL-20250310-00000000 not found"},
    }


def test_migrate_command_line(tmp_path, capsys):
    url = sqlite_url(tmp_path / "cli.db")
    assert migrate.main(["--database-url", url, "upgrade", "--to", MIGRATIONS[2].key]) == 0
    assert "Applied 3 migration(s)" in capsys.readouterr().out

    assert migrate.main(["--database-url", url, "verify"]) == 1
    assert "pending" in capsys.readouterr().err

    assert migrate.main(["--database-url", url, "downgrade", "--all"]) == 0
    assert "Reverted 3 migration(s)" in capsys.readouterr().out

    assert migrate.main(["--database-url", url, "status"]) == 0
    assert capsys.readouterr().out.count("pending") == len(MIGRATIONS)
