"""001 – Approval schema: org structure, roles, workflows, instances, notifications, audit.

Revision ID: 001_approval_schema
Revises:
Create Date: 2026-10-19 10:00:00.000000+00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers
revision = "001_approval_schema"
down_revision = None
branch_labels = None
depends_on = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

ENUM_TYPES: list[tuple[str, list[str]]] = [
    ("employment_status", ["active", "notice_period", "relieved", "absconding"]),
    (
        "user_role",
        [
            "employee",
            "manager",
            "hr_manager",
            "finance_manager",
            "hr_admin",
            "system_admin",
        ],
    ),
    (
        "notification_type",
        ["info", "action_required", "approval", "reminder", "alert"],
    ),
    ("approval_entity_type", ["leave", "loan", "expense", "purchase", "custom"]),
    (
        "approver_type",
        ["specific_user", "department_head", "position_based", "role_based"],
    ),
    (
        "approval_instance_status",
        ["in_progress", "approved", "rejected", "cancelled"],
    ),
    (
        "approval_step_decision",
        ["pending", "approved", "rejected", "skipped", "delegated", "auto_approved"],
    ),
]


def _create_enum(name: str, values: list[str]) -> None:
    vals = ", ".join(f"'{v}'" for v in values)
    op.execute(f"CREATE TYPE {name} AS ENUM ({vals})")


def _drop_enum(name: str) -> None:
    op.execute(f"DROP TYPE IF EXISTS {name}")


# ---------------------------------------------------------------------------
# UPGRADE
# ---------------------------------------------------------------------------


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    for name, values in ENUM_TYPES:
        _create_enum(name, values)

    # ── 1. departments ────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE departments (
            id                   UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            name                 VARCHAR(150) NOT NULL UNIQUE,
            code                 VARCHAR(20) UNIQUE,
            description          TEXT,
            parent_department_id UUID REFERENCES departments(id),
            head_employee_id     UUID,  -- FK added after employees table
            is_active            BOOLEAN DEFAULT TRUE,
            created_at           TIMESTAMPTZ DEFAULT NOW(),
            updated_at           TIMESTAMPTZ DEFAULT NOW()
        )
    """)

    # ── 2. positions ──────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE positions (
            id            UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            title         VARCHAR(150) NOT NULL,
            code          VARCHAR(20) UNIQUE,
            level         INTEGER,
            department_id UUID REFERENCES departments(id),
            is_active     BOOLEAN DEFAULT TRUE,
            created_at    TIMESTAMPTZ DEFAULT NOW()
        )
    """)

    # ── 3. employees ──────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE employees (
            id                   UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            employee_code        VARCHAR(20)  NOT NULL UNIQUE,
            first_name           VARCHAR(100) NOT NULL,
            last_name            VARCHAR(100) NOT NULL,
            display_name         VARCHAR(255),
            email                VARCHAR(255) NOT NULL UNIQUE,
            department_id        UUID REFERENCES departments(id),
            position_id          UUID REFERENCES positions(id),
            reporting_manager_id UUID REFERENCES employees(id),
            employment_status    employment_status DEFAULT 'active',
            date_of_joining      DATE,
            is_active            BOOLEAN DEFAULT TRUE,
            created_at           TIMESTAMPTZ DEFAULT NOW(),
            updated_at           TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute(
        "ALTER TABLE departments ADD CONSTRAINT fk_dept_head "
        "FOREIGN KEY (head_employee_id) REFERENCES employees(id)"
    )
    op.create_index("ix_employees_department", "employees", ["department_id"])
    op.create_index("ix_employees_position", "employees", ["position_id"])

    # ── 4. role_assignments ───────────────────────────────────────────────
    op.execute("""
        CREATE TABLE role_assignments (
            id          UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            employee_id UUID NOT NULL REFERENCES employees(id) ON DELETE CASCADE,
            role        user_role NOT NULL,
            assigned_by UUID REFERENCES employees(id),
            assigned_at TIMESTAMPTZ DEFAULT NOW(),
            revoked_at  TIMESTAMPTZ,
            is_active   BOOLEAN DEFAULT TRUE
        )
    """)
    op.create_index(
        "ix_role_assignments_role_active", "role_assignments", ["role", "is_active"],
    )

    # ── 5. approval_workflows ─────────────────────────────────────────────
    op.execute("""
        CREATE TABLE approval_workflows (
            id            UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            name          VARCHAR(150) NOT NULL UNIQUE,
            description   TEXT,
            entity_type   approval_entity_type NOT NULL,
            department_id UUID REFERENCES departments(id) ON DELETE SET NULL,
            position_id   UUID REFERENCES positions(id) ON DELETE SET NULL,
            min_amount    NUMERIC(15, 2),
            max_amount    NUMERIC(15, 2),
            is_active     BOOLEAN DEFAULT TRUE,
            settings      JSONB DEFAULT '{}'::jsonb,
            created_by    UUID REFERENCES employees(id),
            created_at    TIMESTAMPTZ DEFAULT NOW(),
            updated_at    TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT ck_approval_workflows_amount_range CHECK (
                min_amount IS NULL OR max_amount IS NULL OR min_amount <= max_amount
            )
        )
    """)
    op.create_index(
        "ix_approval_workflows_entity_active",
        "approval_workflows",
        ["entity_type", "is_active"],
    )

    # ── 6. approval_steps ─────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE approval_steps (
            id                       UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            workflow_id              UUID NOT NULL
                                     REFERENCES approval_workflows(id) ON DELETE CASCADE,
            step_order               INTEGER NOT NULL,
            name                     VARCHAR(150) NOT NULL,
            description              TEXT,
            approver_type            approver_type NOT NULL,
            approver_id              UUID REFERENCES employees(id) ON DELETE SET NULL,
            position_id              UUID REFERENCES positions(id) ON DELETE SET NULL,
            role                     user_role,
            department_id            UUID REFERENCES departments(id) ON DELETE SET NULL,
            is_required              BOOLEAN DEFAULT TRUE,
            can_delegate             BOOLEAN DEFAULT FALSE,
            can_skip                 BOOLEAN DEFAULT FALSE,
            auto_approve             BOOLEAN DEFAULT FALSE,
            auto_approve_after_hours INTEGER,
            settings                 JSONB DEFAULT '{}'::jsonb,
            CONSTRAINT uq_approval_step_order UNIQUE (workflow_id, step_order),
            CONSTRAINT ck_approval_steps_auto_hours CHECK (
                auto_approve_after_hours IS NULL OR auto_approve_after_hours > 0
            )
        )
    """)

    # ── 7. approval_instances ─────────────────────────────────────────────
    op.execute("""
        CREATE TABLE approval_instances (
            id                 UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            workflow_id        UUID NOT NULL
                               REFERENCES approval_workflows(id) ON DELETE RESTRICT,
            entity_type        approval_entity_type NOT NULL,
            entity_id          UUID NOT NULL,
            requester_id       UUID REFERENCES employees(id),
            department_id      UUID,
            position_id        UUID,
            amount             NUMERIC(15, 2),
            current_step_order INTEGER,
            status             approval_instance_status NOT NULL DEFAULT 'in_progress',
            cancel_reason      TEXT,
            version            INTEGER NOT NULL DEFAULT 0,
            created_at         TIMESTAMPTZ NOT NULL,
            completed_at       TIMESTAMPTZ,
            updated_at         TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT uq_approval_instance_entity UNIQUE (entity_type, entity_id)
        )
    """)
    op.create_index("ix_approval_instances_status", "approval_instances", ["status"])

    # ── 8. approval_step_records ──────────────────────────────────────────
    op.execute("""
        CREATE TABLE approval_step_records (
            id                 UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            instance_id        UUID NOT NULL
                               REFERENCES approval_instances(id) ON DELETE CASCADE,
            step_order         INTEGER NOT NULL,
            decision           approval_step_decision NOT NULL DEFAULT 'pending',
            resolved_approvers JSONB DEFAULT '[]'::jsonb,
            activated_at       TIMESTAMPTZ,
            decided_by         UUID,
            decided_at         TIMESTAMPTZ,
            delegated_by       UUID,
            comments           TEXT,
            CONSTRAINT uq_approval_record_step UNIQUE (instance_id, step_order)
        )
    """)

    # ── 9. notifications ──────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE notifications (
            id           UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            recipient_id UUID NOT NULL REFERENCES employees(id) ON DELETE CASCADE,
            type         notification_type DEFAULT 'info',
            title        VARCHAR(200) NOT NULL,
            message      TEXT NOT NULL,
            action_url   VARCHAR(500),
            entity_type  VARCHAR(50),
            entity_id    UUID,
            extra        JSONB,
            is_read      BOOLEAN DEFAULT FALSE,
            read_at      TIMESTAMPTZ,
            created_at   TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.create_index(
        "ix_notifications_recipient_read", "notifications", ["recipient_id", "is_read"],
    )

    # ── 10. audit_trail ───────────────────────────────────────────────────
    op.create_table(
        "audit_trail",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text("uuid_generate_v4()")),
        sa.Column("actor_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("employees.id"), nullable=True),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("old_values", postgresql.JSONB, nullable=True),
        sa.Column("new_values", postgresql.JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text("NOW()")),
    )
    op.create_index("ix_audit_trail_actor_id", "audit_trail", ["actor_id"])
    op.create_index("ix_audit_trail_entity", "audit_trail", ["entity_type", "entity_id"])
    op.create_index("ix_audit_trail_created_at", "audit_trail", ["created_at"])


# ---------------------------------------------------------------------------
# DOWNGRADE
# ---------------------------------------------------------------------------


def downgrade() -> None:
    # Drop tables in reverse dependency order
    tables = [
        "audit_trail",
        "notifications",
        "approval_step_records",
        "approval_instances",
        "approval_steps",
        "approval_workflows",
        "role_assignments",
    ]
    for t in tables:
        op.execute(f"DROP TABLE IF EXISTS {t} CASCADE")

    # Drop deferred FK before dropping employees / departments
    op.execute(
        "ALTER TABLE departments DROP CONSTRAINT IF EXISTS fk_dept_head"
    )
    op.execute("DROP TABLE IF EXISTS employees CASCADE")
    op.execute("DROP TABLE IF EXISTS positions CASCADE")
    op.execute("DROP TABLE IF EXISTS departments CASCADE")

    for name, _ in reversed(ENUM_TYPES):
        _drop_enum(name)
