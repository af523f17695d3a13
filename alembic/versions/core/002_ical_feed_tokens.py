"""create_ical_feed_tokens

Feed tokens, the access log, and ``validate_ical_token``: the single
statement path that checks a token and bumps its hourly counter while
holding the row lock.

Revision ID: core_002
Revises: core_001
Create Date: 2026-02-06 00:00:05.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_002"
down_revision = "core_001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS ical_feed_tokens (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            circle_id UUID NOT NULL REFERENCES circles(id) ON DELETE CASCADE,
            created_by UUID REFERENCES users(id) ON DELETE SET NULL,
            token TEXT NOT NULL UNIQUE,
            feed_name TEXT,
            include_tasks BOOLEAN NOT NULL DEFAULT true,
            include_shifts BOOLEAN NOT NULL DEFAULT true,
            include_appointments BOOLEAN NOT NULL DEFAULT true,
            include_handoff_followups BOOLEAN NOT NULL DEFAULT false,
            patient_ids UUID[],
            show_minimal_details BOOLEAN DEFAULT true,
            lookahead_days INTEGER DEFAULT 90,
            expires_at TIMESTAMPTZ,
            revoked_at TIMESTAMPTZ,
            access_count INTEGER NOT NULL DEFAULT 0,
            last_accessed_at TIMESTAMPTZ,
            last_accessed_ip TEXT,
            last_accessed_user_agent TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT chk_token_format CHECK (token ~ '^[A-Za-z0-9_-]{43}$'),
            CONSTRAINT chk_lookahead_days CHECK (lookahead_days >= 1 AND lookahead_days <= 730)
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS ical_feed_tokens_circle_id_idx ON ical_feed_tokens (circle_id)"
    )

    op.execute("""
        CREATE TABLE IF NOT EXISTS feed_access_log (
            id BIGSERIAL PRIMARY KEY,
            token_id UUID REFERENCES ical_feed_tokens(id) ON DELETE SET NULL,
            circle_id UUID NOT NULL,
            event_count INTEGER NOT NULL,
            client_ip TEXT,
            user_agent TEXT,
            accessed_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS feed_access_log_token_accessed_idx
        ON feed_access_log (token_id, accessed_at DESC)
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION validate_ical_token(p_token TEXT)
        RETURNS TABLE (
            is_valid BOOLEAN,
            circle_id UUID,
            feed_config JSONB,
            error_code TEXT,
            token_id UUID
        ) AS $$
        DECLARE
            v_token RECORD;
            v_new_count INTEGER;
        BEGIN
            IF p_token IS NULL OR p_token !~ '^[A-Za-z0-9_-]{43}$' THEN
                RETURN QUERY SELECT false, NULL::uuid, NULL::jsonb,
                    'INVALID_TOKEN_FORMAT'::text, NULL::uuid;
                RETURN;
            END IF;

            SELECT * INTO v_token
            FROM ical_feed_tokens t
            WHERE t.token = p_token
            FOR UPDATE;

            IF NOT FOUND THEN
                RETURN QUERY SELECT false, NULL::uuid, NULL::jsonb,
                    'TOKEN_NOT_FOUND'::text, NULL::uuid;
                RETURN;
            END IF;

            IF v_token.revoked_at IS NOT NULL THEN
                RETURN QUERY SELECT false, NULL::uuid, NULL::jsonb,
                    'TOKEN_REVOKED'::text, v_token.id;
                RETURN;
            END IF;

            IF v_token.expires_at IS NOT NULL AND v_token.expires_at < now() THEN
                RETURN QUERY SELECT false, NULL::uuid, NULL::jsonb,
                    'TOKEN_EXPIRED'::text, v_token.id;
                RETURN;
            END IF;

            UPDATE ical_feed_tokens t
            SET
                access_count = CASE
                    WHEN t.last_accessed_at IS NULL
                        OR t.last_accessed_at < now() - interval '1 hour'
                    THEN 1
                    ELSE t.access_count + 1
                END,
                last_accessed_at = now()
            WHERE t.id = v_token.id
            RETURNING t.access_count INTO v_new_count;

            IF v_new_count > 100 THEN
                RETURN QUERY SELECT false, NULL::uuid, NULL::jsonb,
                    'RATE_LIMITED'::text, v_token.id;
                RETURN;
            END IF;

            RETURN QUERY SELECT
                true,
                v_token.circle_id,
                jsonb_build_object(
                    'include_tasks', v_token.include_tasks,
                    'include_shifts', v_token.include_shifts,
                    'include_appointments', v_token.include_appointments,
                    'include_handoff_followups', v_token.include_handoff_followups,
                    'patient_ids', v_token.patient_ids,
                    'show_minimal_details', v_token.show_minimal_details,
                    'lookahead_days', v_token.lookahead_days
                ),
                NULL::text,
                v_token.id;
        END;
        $$ LANGUAGE plpgsql
    """)


def downgrade() -> None:
    op.execute("DROP FUNCTION IF EXISTS validate_ical_token(TEXT)")
    op.execute("DROP TABLE IF EXISTS feed_access_log")
    op.execute("DROP TABLE IF EXISTS ical_feed_tokens")
