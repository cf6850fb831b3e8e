# zurihealth/migrations/versions.py
"""Ordered migration steps, oldest first.

Keys are UTC timestamps. A change to an existing table goes in a new step
here together with the matching edit in ``zurihealth/schema/tables.py``.
"""
from zurihealth.migrations.operations import (
    AddColumn, AlterColumnType, CreateIndex, CreateTable, DeprecateVocabularyMember,
    DropIndex, ExtendVocabulary, InsertRows, Lookup, Migration, RunQuery,
)
from zurihealth.schema import tables as t
from zurihealth.schema.registry import STRING, TEXT, IndexSpec
from zurihealth.schema.vocabularies import VOCABULARIES


def release(vocabulary: str, version: int) -> ExtendVocabulary:
    return ExtendVocabulary(vocabulary, dict(VOCABULARIES[vocabulary].releases)[version], version)


CORE_DEPARTMENTS = (
    {"code": "GEN-MED", "name": "General Medicine", "description": "Outpatient and inpatient general care",
     "status": "active"},
    {"code": "LAB", "name": "Laboratory", "description": "Clinical laboratory services", "status": "active"},
    {"code": "PHAR", "name": "Pharmacy", "description": "Dispensing and medication management",
     "status": "active"},
)

DEFAULT_LAB_TEMPLATES = (
    {
        "name": "Full Blood Count",
        "category": "HEMATOLOGY",
        "sample_type": "Whole blood (EDTA)",
        "turnaround_hours": 4,
        "is_active": True,
        "parameters": [
            {"name": "Hemoglobin", "unit": "g/dL", "value_type": "NUMERIC", "normal_range": {"min": 12, "max": 17.5}},
            {"name": "White Blood Cells", "unit": "x10^9/L", "value_type": "NUMERIC",
             "normal_range": {"min": 4, "max": 11}},
            {"name": "Platelets", "unit": "x10^9/L", "value_type": "NUMERIC",
             "normal_range": {"min": 150, "max": 450}},
        ],
    },
    {
        "name": "Fasting Blood Glucose",
        "category": "BIOCHEMISTRY",
        "sample_type": "Plasma (fluoride)",
        "turnaround_hours": 2,
        "is_active": True,
        "parameters": [
            {"name": "Glucose", "unit": "mmol/L", "value_type": "NUMERIC", "normal_range": {"min": 3.9, "max": 5.6}},
        ],
    },
    {
        "name": "Malaria Rapid Diagnostic Test",
        "category": "MICROBIOLOGY",
        "sample_type": "Capillary blood",
        "turnaround_hours": 1,
        "is_active": True,
        "parameters": [
            {"name": "Result", "value_type": "OPTION", "options": ["Negative", "Positive"],
             "normal_options": ["Negative"]},
        ],
    },
    {
        "name": "Urinalysis",
        "category": "URINALYSIS",
        "sample_type": "Urine (midstream)",
        "turnaround_hours": 2,
        "is_active": True,
        "parameters": [
            {"name": "pH", "value_type": "NUMERIC", "normal_range": {"min": 4.5, "max": 8}},
            {"name": "Protein", "value_type": "OPTION", "options": ["Negative", "Trace", "1+", "2+", "3+"],
             "normal_options": ["Negative"]},
            {"name": "Appearance", "value_type": "TEXT"},
        ],
    },
)


MIGRATIONS = [
    Migration("20241116000000", "create-vocabulary-catalog", (
        CreateTable(t.VOCABULARY_MEMBERS),
    )),
    Migration("20241117000000", "initial-setup", (
        release("user_role", 1),
        release("gender", 1),
        release("appointment_type", 1),
        release("appointment_status", 1),
        CreateTable(t.USERS.without_columns("national_id", "registration_id")),
        CreateTable(t.DOCTOR_PROFILES.without_columns("deleted_at", "department_id")),
        CreateTable(t.PATIENT_PROFILES.altered("telephone", unique=True)),
        CreateTable(t.APPOINTMENTS.altered("meeting_link", type=STRING(255))),
    )),
    Migration("20241117010000", "create-medical-records", (
        release("record_status", 1),
        CreateTable(t.MEDICAL_RECORDS),
    )),
    Migration("20241201000000", "create-pharmacy-tables", (
        release("medication_category", 1),
        release("medication_form", 1),
        release("prescription_status", 1),
        CreateTable(t.MEDICATIONS),
        CreateTable(t.PRESCRIPTIONS),
        CreateTable(t.PRESCRIPTION_MEDICATIONS),
    )),
    Migration("20241201000002", "create-lab-tables", (
        release("lab_category", 1),
        release("test_result_status", 1),
        CreateTable(t.LAB_TEST_TEMPLATES.without_columns("department_id")),
        CreateTable(t.TEST_RESULTS.without_columns("is_abnormal")),
    )),
    Migration("20241201000003", "widen-appointment-meeting-link", (
        AlterColumnType("appointments", "meeting_link", STRING(255), TEXT),
    )),
    Migration("20241201000004", "add-is-abnormal-to-test-results", (
        AddColumn("test_results", t.TEST_RESULTS.column("is_abnormal")),
    )),
    Migration("20241205000000", "add-deleted-at-to-doctor-profiles", (
        AddColumn("doctor_profiles", t.DOCTOR_PROFILES.column("deleted_at")),
        CreateIndex("doctor_profiles", IndexSpec("ix_doctor_profiles_deleted_at", ("deleted_at",))),
    )),
    Migration("20241205000001", "add-national-id-and-registration-id-to-users", (
        AddColumn("users", t.USERS.column("national_id")),
        AddColumn("users", t.USERS.column("registration_id")),
    )),
    Migration("20241205143857", "create-departments", (
        release("department_status", 1),
        CreateTable(t.DEPARTMENTS.altered("code", type=STRING(50))),
    )),
    Migration("20241205143858", "seed-core-departments", (
        InsertRows("departments", t.DEPARTMENTS.columns, CORE_DEPARTMENTS, key="code"),
    )),
    Migration("20241205143859", "shorten-department-code", (
        AlterColumnType("departments", "code", STRING(50), STRING(10), nullable=False),
    )),
    Migration("20241205150000", "link-profiles-to-departments", (
        AddColumn("doctor_profiles", t.DOCTOR_PROFILES.column("department_id")),
        AddColumn("lab_test_templates", t.LAB_TEST_TEMPLATES.column("department_id")),
    )),
    Migration("20241205150001", "seed-default-lab-templates", (
        InsertRows(
            "lab_test_templates",
            t.LAB_TEST_TEMPLATES.columns,
            DEFAULT_LAB_TEMPLATES,
            key="name",
            lookups={"department_id": Lookup("departments", "code", "LAB")},
        ),
    )),
    Migration("20241215000000", "report-doctors-without-department", (
        RunQuery(
            "Doctors without a department",
            "SELECT id, license_number FROM doctor_profiles "
            "WHERE department_id IS NULL AND deleted_at IS NULL",
        ),
    )),
    Migration("20250911000000", "create-omaera-pharmacy-tables", (
        CreateTable(t.OMAERA_MEDICATIONS),
    )),
    Migration("20250912000000", "create-inventory-and-billing", (
        release("inventory_status", 1),
        release("bill_status", 1),
        CreateTable(t.INVENTORY_ITEMS),
        CreateTable(t.BILLS),
    )),
    Migration("20250917080100", "remove-unique-telephone-on-patients", (
        DropIndex("patient_profiles", IndexSpec("uq_patient_profiles_telephone", ("telephone",), unique=True)),
    )),
    Migration("20250920000000", "extend-staff-roles", (
        release("user_role", 2),
    )),
    Migration("20250921000000", "introduce-telehealth-appointments", (
        release("appointment_type", 2),
        DeprecateVocabularyMember("appointment_type", "video", 2),
    )),
    Migration("20251001000000", "add-molecular-lab-category", (
        release("lab_category", 2),
    )),
]
