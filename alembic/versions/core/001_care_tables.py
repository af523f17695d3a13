"""create_care_tables

Read-only app tables the calendar feed consumes.  In production these are
owned by the consumer app's schema; the definitions here mirror the columns
the feed reads so that local and test databases match.

Revision ID: core_001
Revises:
Create Date: 2026-02-06 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            email TEXT UNIQUE,
            display_name TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS circles (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name TEXT NOT NULL,
            owner_user_id UUID REFERENCES users(id) ON DELETE RESTRICT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            deleted_at TIMESTAMPTZ
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS patients (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            circle_id UUID NOT NULL REFERENCES circles(id) ON DELETE CASCADE,
            display_name TEXT NOT NULL,
            archived_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS patients_circle_id_idx ON patients (circle_id)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS handoffs (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            circle_id UUID NOT NULL REFERENCES circles(id) ON DELETE CASCADE,
            patient_id UUID REFERENCES patients(id) ON DELETE SET NULL,
            title TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'DRAFT'
                CHECK (status IN ('DRAFT', 'PUBLISHED')),
            published_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS tasks (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            circle_id UUID NOT NULL REFERENCES circles(id) ON DELETE CASCADE,
            patient_id UUID REFERENCES patients(id) ON DELETE SET NULL,
            handoff_id UUID REFERENCES handoffs(id) ON DELETE SET NULL,
            owner_user_id UUID REFERENCES users(id) ON DELETE RESTRICT,
            title TEXT NOT NULL,
            description TEXT,
            due_at TIMESTAMPTZ,
            priority TEXT NOT NULL DEFAULT 'MED' CHECK (priority IN ('LOW', 'MED', 'HIGH')),
            status TEXT NOT NULL DEFAULT 'OPEN' CHECK (status IN ('OPEN', 'DONE', 'CANCELED')),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS tasks_open_due_idx
        ON tasks (circle_id, due_at)
        WHERE due_at IS NOT NULL AND status = 'OPEN'
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS tasks_handoff_id_idx
        ON tasks (handoff_id)
        WHERE handoff_id IS NOT NULL
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS care_shifts (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            circle_id UUID NOT NULL REFERENCES circles(id) ON DELETE CASCADE,
            patient_id UUID NOT NULL REFERENCES patients(id) ON DELETE CASCADE,
            owner_user_id UUID NOT NULL REFERENCES users(id) ON DELETE RESTRICT,
            start_at TIMESTAMPTZ NOT NULL,
            end_at TIMESTAMPTZ NOT NULL,
            status TEXT NOT NULL DEFAULT 'SCHEDULED'
                CHECK (status IN ('SCHEDULED', 'IN_PROGRESS', 'COMPLETED', 'CANCELED')),
            notes TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS care_shifts_circle_start_idx"
        " ON care_shifts (circle_id, start_at)"
    )

    op.execute("""
        CREATE TABLE IF NOT EXISTS binder_items (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            circle_id UUID NOT NULL REFERENCES circles(id) ON DELETE CASCADE,
            patient_id UUID REFERENCES patients(id) ON DELETE SET NULL,
            type TEXT NOT NULL
                CHECK (type IN ('MED', 'CONTACT', 'FACILITY', 'INSURANCE', 'DOC', 'NOTE')),
            title TEXT NOT NULL,
            content_json JSONB NOT NULL DEFAULT '{}'::jsonb,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS binder_items_active_contact_idx
        ON binder_items (circle_id)
        WHERE type = 'CONTACT' AND is_active
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS binder_items")
    op.execute("DROP TABLE IF EXISTS care_shifts")
    op.execute("DROP TABLE IF EXISTS tasks")
    op.execute("DROP TABLE IF EXISTS handoffs")
    op.execute("DROP TABLE IF EXISTS patients")
    op.execute("DROP TABLE IF EXISTS circles")
    op.execute("DROP TABLE IF EXISTS users")
