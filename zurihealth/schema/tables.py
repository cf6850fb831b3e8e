# zurihealth/schema/tables.py
"""Current shape of every table in the record store."""
from zurihealth.schema.registry import (
    ARRAY, BOOLEAN, DATE, DECIMAL, ENUM, INTEGER, JSON, STRING, TEXT, TIMESTAMP,
    CheckSpec, ColumnSpec, IndexSpec, SchemaRegistry, TableSpec,
    primary_key, references, timestamps,
)

registry = SchemaRegistry()

# ================================
# VOCABULARY CATALOGUE
# ================================

VOCABULARY_MEMBERS = registry.register(TableSpec(
    "vocabulary_members",
    (
        ColumnSpec("vocabulary", STRING(64), nullable=False, primary_key=True),
        ColumnSpec("member", STRING(64), nullable=False, primary_key=True),
        ColumnSpec("version", INTEGER, nullable=False),
        ColumnSpec("deprecated_in", INTEGER),
    ),
))

# ================================
# PEOPLE
# ================================

USERS = registry.register(TableSpec(
    "users",
    (
        primary_key(),
        ColumnSpec("first_name", STRING(100), nullable=False),
        ColumnSpec("last_name", STRING(100), nullable=False),
        ColumnSpec("email", STRING(255), nullable=False, unique=True),
        ColumnSpec("phone", STRING(20)),
        ColumnSpec("password_hash", STRING(255), nullable=False),
        ColumnSpec("role", ENUM("user_role"), nullable=False, default="patient"),
        ColumnSpec("gender", ENUM("gender")),
        ColumnSpec("date_of_birth", DATE),
        ColumnSpec("is_active", BOOLEAN, nullable=False, default=True),
        ColumnSpec("last_login_at", TIMESTAMP),
        *timestamps(),
        ColumnSpec("national_id", STRING(50), unique=True),
        ColumnSpec("registration_id", STRING(50), unique=True),
    ),
    indexes=(IndexSpec("ix_users_role", ("role",)),),
))

DEPARTMENTS = registry.register(TableSpec(
    "departments",
    (
        primary_key(),
        ColumnSpec("name", STRING(100), nullable=False, unique=True),
        ColumnSpec("code", STRING(10), nullable=False, unique=True),
        ColumnSpec("description", TEXT),
        ColumnSpec("status", ENUM("department_status"), nullable=False, default="active"),
        *timestamps(),
    ),
))

DOCTOR_PROFILES = registry.register(TableSpec(
    "doctor_profiles",
    (
        primary_key(),
        references("user_id", "users", unique=True),
        ColumnSpec("specialization", STRING(100), nullable=False),
        ColumnSpec("license_number", STRING(100), nullable=False, unique=True),
        ColumnSpec("qualifications", ARRAY(STRING(255)), nullable=False, default=list),
        ColumnSpec("experience_years", INTEGER),
        ColumnSpec("consultation_fee", DECIMAL(10, 2)),
        ColumnSpec("bio", TEXT),
        ColumnSpec("availability", JSON, nullable=False, default=list),
        ColumnSpec("is_available_for_video", BOOLEAN, nullable=False, default=True),
        *timestamps(),
        ColumnSpec("deleted_at", TIMESTAMP),
        references("department_id", "departments", nullable=True),
    ),
    indexes=(IndexSpec("ix_doctor_profiles_deleted_at", ("deleted_at",)),),
))

PATIENT_PROFILES = registry.register(TableSpec(
    "patient_profiles",
    (
        primary_key(),
        references("user_id", "users", unique=True),
        ColumnSpec("patient_number", STRING(20), nullable=False, unique=True),
        ColumnSpec("date_of_birth", DATE),
        ColumnSpec("gender", ENUM("gender")),
        ColumnSpec("blood_group", STRING(5)),
        ColumnSpec("telephone", STRING(20), nullable=False),
        ColumnSpec("address", JSON),
        ColumnSpec("emergency_contact", JSON),
        ColumnSpec("medical_history", JSON, nullable=False, default=list),
        ColumnSpec("allergies", ARRAY(STRING(100)), nullable=False, default=list),
        ColumnSpec("current_medications", JSON, nullable=False, default=list),
        ColumnSpec("deleted_at", TIMESTAMP),
        *timestamps(),
    ),
))

# ================================
# CLINICAL
# ================================

APPOINTMENTS = registry.register(TableSpec(
    "appointments",
    (
        primary_key(),
        references("patient_id", "patient_profiles"),
        references("doctor_id", "doctor_profiles"),
        ColumnSpec("date_time", TIMESTAMP, nullable=False),
        ColumnSpec("type", ENUM("appointment_type"), nullable=False),
        ColumnSpec("status", ENUM("appointment_status"), nullable=False, default="scheduled"),
        ColumnSpec("reason", TEXT, nullable=False),
        ColumnSpec("notes", TEXT),
        ColumnSpec("meeting_link", TEXT),
        references("cancelled_by", "users", nullable=True),
        ColumnSpec("cancel_reason", TEXT),
        references("created_by", "users", nullable=True),
        *timestamps(),
    ),
    indexes=(
        IndexSpec("ix_appointments_patient_date", ("patient_id", "date_time")),
        IndexSpec("ix_appointments_doctor_date", ("doctor_id", "date_time")),
        IndexSpec("ix_appointments_status", ("status",)),
    ),
))

MEDICAL_RECORDS = registry.register(TableSpec(
    "medical_records",
    (
        primary_key(),
        references("patient_id", "patient_profiles"),
        references("doctor_id", "doctor_profiles"),
        references("appointment_id", "appointments", nullable=True),
        ColumnSpec("diagnosis", TEXT, nullable=False),
        ColumnSpec("symptoms", ARRAY(STRING(255)), nullable=False, default=list),
        ColumnSpec("vitals", JSON),
        ColumnSpec("prescription_items", JSON, nullable=False, default=list),
        ColumnSpec("notes", TEXT),
        ColumnSpec("attachments", JSON, nullable=False, default=list),
        ColumnSpec("status", ENUM("record_status"), nullable=False, default="draft"),
        ColumnSpec("finalized_at", TIMESTAMP),
        references("created_by", "users", nullable=True),
        *timestamps(),
    ),
    indexes=(IndexSpec("ix_medical_records_patient", ("patient_id",)),),
))

# ================================
# PHARMACY
# ================================

MEDICATIONS = registry.register(TableSpec(
    "medications",
    (
        primary_key(),
        ColumnSpec("item_code", STRING(50), nullable=False, unique=True),
        ColumnSpec("name", STRING(255), nullable=False),
        ColumnSpec("generic_name", STRING(255)),
        ColumnSpec("category", ENUM("medication_category"), nullable=False),
        ColumnSpec("form", ENUM("medication_form"), nullable=False),
        ColumnSpec("strength", STRING(50), nullable=False),
        ColumnSpec("manufacturer", STRING(255)),
        ColumnSpec("unit_price", DECIMAL(10, 2), nullable=False),
        ColumnSpec("prescription_required", BOOLEAN, nullable=False, default=True),
        ColumnSpec("is_active", BOOLEAN, nullable=False, default=True),
        *timestamps(),
    ),
))

PRESCRIPTIONS = registry.register(TableSpec(
    "prescriptions",
    (
        primary_key(),
        references("patient_id", "patient_profiles"),
        references("doctor_id", "doctor_profiles"),
        references("appointment_id", "appointments", nullable=True),
        ColumnSpec("diagnosis", TEXT, nullable=False),
        ColumnSpec("notes", TEXT),
        ColumnSpec("valid_until", TIMESTAMP, nullable=False),
        ColumnSpec("status", ENUM("prescription_status"), nullable=False, default="active"),
        ColumnSpec("refill_count", INTEGER, nullable=False, default=0),
        ColumnSpec("max_refills", INTEGER, nullable=False, default=0),
        *timestamps(),
    ),
    checks=(
        CheckSpec(
            "ck_prescriptions_refill_bounds",
            "refill_count >= 0 AND max_refills >= 0 AND refill_count <= max_refills",
        ),
    ),
))

PRESCRIPTION_MEDICATIONS = registry.register(TableSpec(
    "prescription_medications",
    (
        primary_key(),
        references("prescription_id", "prescriptions", ondelete="CASCADE"),
        references("medication_id", "medications"),
        ColumnSpec("quantity", INTEGER, nullable=False, default=1),
        ColumnSpec("instructions", TEXT),
        *timestamps(),
    ),
    indexes=(
        IndexSpec("uq_prescription_medications_line", ("prescription_id", "medication_id"), unique=True),
    ),
    checks=(CheckSpec("ck_prescription_medications_quantity", "quantity >= 1"),),
))

OMAERA_MEDICATIONS = registry.register(TableSpec(
    "omaera_medications",
    (
        primary_key(),
        ColumnSpec("item_code", STRING(50), nullable=False, unique=True),
        ColumnSpec("item_description", TEXT, nullable=False),
        ColumnSpec("pack_size", STRING(50)),
        ColumnSpec("tax_code", DECIMAL(4, 2), nullable=False, default=0),
        ColumnSpec("original_price", DECIMAL(10, 2), nullable=False),
        ColumnSpec("current_price", DECIMAL(10, 2), nullable=False),
        ColumnSpec("is_active", BOOLEAN, nullable=False, default=True),
        references("last_updated_by", "users", nullable=True),
        ColumnSpec("notes", TEXT),
        *timestamps(),
    ),
    indexes=(IndexSpec("ix_omaera_medications_is_active", ("is_active",)),),
))

# ================================
# LABORATORY
# ================================

LAB_TEST_TEMPLATES = registry.register(TableSpec(
    "lab_test_templates",
    (
        primary_key(),
        ColumnSpec("name", STRING(255), nullable=False, unique=True),
        ColumnSpec("category", ENUM("lab_category"), nullable=False),
        ColumnSpec("parameters", JSON, nullable=False, default=list),
        ColumnSpec("sample_type", STRING(100)),
        ColumnSpec("instructions", TEXT),
        ColumnSpec("turnaround_hours", INTEGER),
        ColumnSpec("cost", DECIMAL(10, 2)),
        ColumnSpec("is_active", BOOLEAN, nullable=False, default=True),
        *timestamps(),
        references("department_id", "departments", nullable=True),
    ),
))

TEST_RESULTS = registry.register(TableSpec(
    "test_results",
    (
        primary_key(),
        references("patient_id", "patient_profiles"),
        references("doctor_id", "doctor_profiles"),
        references("template_id", "lab_test_templates", nullable=True),
        ColumnSpec("test_name", STRING(255), nullable=False),
        ColumnSpec("performed_at", TIMESTAMP, nullable=False),
        ColumnSpec("result", TEXT, nullable=False),
        ColumnSpec("parameter_values", JSON, nullable=False, default=dict),
        ColumnSpec("status", ENUM("test_result_status"), nullable=False),
        ColumnSpec("comments", TEXT),
        *timestamps(),
        ColumnSpec("is_abnormal", BOOLEAN, nullable=False, default=False, server_default="false"),
    ),
    indexes=(IndexSpec("ix_test_results_patient", ("patient_id",)),),
))

# ================================
# OPERATIONS
# ================================

INVENTORY_ITEMS = registry.register(TableSpec(
    "inventory_items",
    (
        primary_key(),
        ColumnSpec("item_code", STRING(50), nullable=False, unique=True),
        ColumnSpec("name", STRING(255), nullable=False),
        ColumnSpec("category", STRING(100), nullable=False),
        ColumnSpec("quantity", INTEGER, nullable=False, default=0),
        ColumnSpec("unit", STRING(30)),
        ColumnSpec("minimum_level", INTEGER, nullable=False, default=0),
        ColumnSpec("supplier", JSON),
        ColumnSpec("cost", DECIMAL(10, 2)),
        ColumnSpec("expiry_date", DATE),
        ColumnSpec("location", STRING(100)),
        ColumnSpec("status", ENUM("inventory_status"), nullable=False, default="out-of-stock"),
        *timestamps(),
    ),
    checks=(CheckSpec("ck_inventory_items_levels", "quantity >= 0 AND minimum_level >= 0"),),
))

BILLS = registry.register(TableSpec(
    "bills",
    (
        primary_key(),
        ColumnSpec("bill_number", STRING(30), nullable=False, unique=True),
        references("patient_id", "patient_profiles"),
        references("appointment_id", "appointments", nullable=True),
        ColumnSpec("items", JSON, nullable=False, default=list),
        ColumnSpec("total_amount", DECIMAL(12, 2), nullable=False),
        ColumnSpec("tax", DECIMAL(12, 2), nullable=False, default=0),
        ColumnSpec("discount", DECIMAL(12, 2), nullable=False, default=0),
        ColumnSpec("final_amount", DECIMAL(12, 2), nullable=False),
        ColumnSpec("status", ENUM("bill_status"), nullable=False, default="pending"),
        ColumnSpec("payment_method", STRING(50)),
        ColumnSpec("payment_date", TIMESTAMP),
        ColumnSpec("due_date", DATE),
        references("created_by", "users", nullable=True),
        *timestamps(),
    ),
    indexes=(
        IndexSpec("ix_bills_patient", ("patient_id",)),
        IndexSpec("ix_bills_status", ("status",)),
    ),
))

metadata = registry.build_metadata()
