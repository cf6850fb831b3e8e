import pytest

from zurihealth.errors import MigrationConflictError
from zurihealth.schema.registry import STRING, TableSpec, ColumnSpec, SchemaRegistry, primary_key
from zurihealth.schema.tables import DOCTOR_PROFILES, USERS, metadata, registry
from zurihealth.schema.vocabularies import VOCABULARIES, Vocabulary, check_vocabulary_evolution


def test_metadata_holds_every_registered_table():
    assert set(metadata.tables) == set(registry.tables)


def test_unique_columns_get_named_unique_indexes():
    indexes = {index.name: index for index in USERS.all_indexes()}
    assert indexes["uq_users_email"].unique
    assert indexes["uq_users_email"].columns == ("email",)
    assert not indexes["ix_users_role"].unique

    table = metadata.tables["users"]
    assert {index.name for index in table.indexes} == set(indexes)


def test_foreign_keys_are_named_after_table_and_column():
    table = metadata.tables["appointments"]
    names = {constraint.name for constraint in table.foreign_key_constraints}
    assert "fk_appointments_doctor_id" in names
    assert "fk_appointments_cancelled_by" in names


def test_without_columns_drops_indexes_on_removed_columns():
    earlier = DOCTOR_PROFILES.without_columns("deleted_at", "department_id")
    assert "deleted_at" not in earlier.column_names
    assert all(index.name != "ix_doctor_profiles_deleted_at" for index in earlier.all_indexes())
    assert not earlier.soft_delete
    assert DOCTOR_PROFILES.soft_delete


def test_altered_changes_one_column_only():
    wider = USERS.altered("phone", type=STRING(40))
    assert wider.column("phone").type == STRING(40)
    assert wider.column("email") == USERS.column("email")

    with pytest.raises(KeyError):
        USERS.altered("nickname", type=STRING(10))


def test_referencing_lists_cascades():
    assert registry.referencing("prescriptions") == [("prescription_medications", "prescription_id", "CASCADE")]
    referencing_users = {(table, column) for table, column, _ in registry.referencing("users")}
    assert ("doctor_profiles", "user_id") in referencing_users
    assert ("omaera_medications", "last_updated_by") in referencing_users


def test_registering_a_table_twice_is_rejected():
    local = SchemaRegistry()
    spec = TableSpec("things", (primary_key(), ColumnSpec("label", STRING(20))))
    local.register(spec)
    with pytest.raises(ValueError):
        local.register(spec)

# Vocabularies

def test_vocabulary_members_by_release():
    appointment_type = VOCABULARIES["appointment_type"]
    assert appointment_type.members_at(1) == ("in-person", "video")
    assert appointment_type.members == ("in-person", "video", "telehealth")
    assert appointment_type.writable == ("in-person", "telehealth")
    assert appointment_type.version == 2
    assert appointment_type.introduced_in("telehealth") == 2
    assert not appointment_type.is_writable("video")


def test_vocabulary_enum_names():
    UserRole = VOCABULARIES["user_role"].as_enum("UserRole")
    assert UserRole.LAB_TECHNICIAN.value == "lab-technician"
    assert UserRole.PATIENT == "patient"


def test_adding_members_is_allowed():
    v1 = Vocabulary("colour", ((1, ("red", "green")),))
    v2 = Vocabulary("colour", ((1, ("red", "green")), (2, ("blue",))))
    check_vocabulary_evolution(v1, v2)


def test_removing_a_member_needs_a_deprecation():
    v1 = Vocabulary("colour", ((1, ("red", "green")),))
    v2 = Vocabulary("colour", ((1, ("red",)), (2, ())))
    with pytest.raises(MigrationConflictError) as exc_info:
        check_vocabulary_evolution(v1, v2)
    assert exc_info.value.details["members"] == ["green"]


def test_removing_a_deprecated_member_is_allowed():
    v2 = Vocabulary("colour", ((1, ("red", "green")), (2, ())), deprecations=(("green", 2),))
    v3 = Vocabulary("colour", ((1, ("red",)), (2, ()), (3, ())))
    check_vocabulary_evolution(v2, v3)


def test_deprecation_cannot_be_undone():
    v2 = Vocabulary("colour", ((1, ("red", "green")),), deprecations=(("green", 2),))
    v3 = Vocabulary("colour", ((1, ("red", "green")), (3, ())))
    with pytest.raises(MigrationConflictError):
        check_vocabulary_evolution(v2, v3)


def test_vocabulary_version_cannot_go_backwards():
    v2 = Vocabulary("colour", ((1, ("red",)), (2, ("green",))))
    v1 = Vocabulary("colour", ((1, ("red", "green")),))
    with pytest.raises(MigrationConflictError):
        check_vocabulary_evolution(v2, v1)
