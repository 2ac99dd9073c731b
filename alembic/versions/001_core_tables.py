"""Core tables: accounts, sessions, linkage, statistics, squadrons, ledger.

Revision ID: 001_core_tables
Revises: None
Create Date: 2026-10-18
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_core_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Web users ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS web_users (
            id BIGSERIAL PRIMARY KEY,
            email VARCHAR(320) UNIQUE NOT NULL,
            first_name VARCHAR(64) NOT NULL,
            last_name VARCHAR(64) NOT NULL,
            alias VARCHAR(64),
            roles JSONB NOT NULL DEFAULT '["user"]',
            account_status VARCHAR(16) NOT NULL DEFAULT 'active',
            driver_name VARCHAR(128),
            link_status VARCHAR(24) NOT NULL DEFAULT 'pending_first_race',
            linked_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_web_users_driver_name_lower
        ON web_users(lower(driver_name))
    """)

    # --- Race sessions ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS race_sessions (
            id BIGSERIAL PRIMARY KEY,
            session_id VARCHAR(128) UNIQUE NOT NULL,
            session_name VARCHAR(200) NOT NULL,
            session_date TIMESTAMPTZ NOT NULL,
            session_type VARCHAR(16) NOT NULL DEFAULT 'other'
                CHECK (session_type IN ('practice', 'qualifying', 'race', 'other')),
            processed BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_race_sessions_date ON race_sessions(session_date)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_race_sessions_unprocessed ON race_sessions(processed, id)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS driver_results (
            id BIGSERIAL PRIMARY KEY,
            race_session_id BIGINT NOT NULL REFERENCES race_sessions(id) ON DELETE CASCADE,
            ordinal INTEGER NOT NULL,
            driver_name VARCHAR(128) NOT NULL,
            kart_number INTEGER,
            final_position INTEGER,
            best_time_ms INTEGER,
            last_time_ms INTEGER,
            total_laps INTEGER NOT NULL DEFAULT 0,
            laps JSONB NOT NULL DEFAULT '[]',
            CONSTRAINT driver_results_session_ordinal_key UNIQUE (race_session_id, ordinal)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_driver_results_name_lower
        ON driver_results(lower(driver_name))
    """)

    # --- Linkage requests ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS linkage_requests (
            id BIGSERIAL PRIMARY KEY,
            web_user_id BIGINT NOT NULL REFERENCES web_users(id) ON DELETE CASCADE,
            searched_name VARCHAR(128) NOT NULL,
            selected_driver_name VARCHAR(128) NOT NULL,
            selected_session_id VARCHAR(128) NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'approved', 'rejected', 'cancelled')),
            reviewed_at TIMESTAMPTZ,
            reviewed_by BIGINT REFERENCES web_users(id),
            rejection_reason TEXT,
            admin_notes TEXT,
            user_snapshot JSONB NOT NULL DEFAULT '{}',
            driver_snapshot JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_linkage_requests_one_pending_per_user
        ON linkage_requests(web_user_id) WHERE status = 'pending'
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_linkage_requests_status_created
        ON linkage_requests(status, created_at)
    """)

    # --- Derived statistics ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_statistics (
            user_id BIGINT PRIMARY KEY REFERENCES web_users(id) ON DELETE CASCADE,
            driver_name VARCHAR(128),
            total_races INTEGER NOT NULL DEFAULT 0,
            timed_races INTEGER NOT NULL DEFAULT 0,
            best_time_ms INTEGER NOT NULL DEFAULT 0,
            average_time_ms INTEGER NOT NULL DEFAULT 0,
            time_sum_ms BIGINT NOT NULL DEFAULT 0,
            podium_finishes INTEGER NOT NULL DEFAULT 0,
            first_places INTEGER NOT NULL DEFAULT 0,
            second_places INTEGER NOT NULL DEFAULT 0,
            third_places INTEGER NOT NULL DEFAULT 0,
            best_position INTEGER NOT NULL DEFAULT 0,
            total_laps INTEGER NOT NULL DEFAULT 0,
            favorite_kart INTEGER,
            kart_counts JSONB NOT NULL DEFAULT '{}',
            first_race_at TIMESTAMPTZ,
            last_race_at TIMESTAMPTZ,
            recent_sessions JSONB NOT NULL DEFAULT '[]',
            monthly_stats JSONB NOT NULL DEFAULT '[]',
            covered_through_id BIGINT NOT NULL DEFAULT 0,
            is_stale BOOLEAN NOT NULL DEFAULT true,
            stale_since TIMESTAMPTZ,
            computed_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_user_statistics_stale
        ON user_statistics(stale_since) WHERE is_stale
    """)

    # --- Squadrons ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS squadrons (
            id BIGSERIAL PRIMARY KEY,
            name VARCHAR(30) NOT NULL,
            description VARCHAR(500) NOT NULL DEFAULT '',
            primary_color VARCHAR(7) NOT NULL DEFAULT '#00D4FF',
            secondary_color VARCHAR(7) NOT NULL DEFAULT '#0057B8',
            recruitment_mode VARCHAR(16) NOT NULL DEFAULT 'open'
                CHECK (recruitment_mode IN ('open', 'invite-only')),
            division VARCHAR(16) NOT NULL DEFAULT 'Open',
            captain_id BIGINT REFERENCES web_users(id),
            member_count INTEGER NOT NULL DEFAULT 1,
            fair_racing_average INTEGER NOT NULL DEFAULT 0,
            total_points INTEGER NOT NULL DEFAULT 0,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT ck_squadrons_member_count_range CHECK (member_count >= 0 AND member_count <= 4),
            CONSTRAINT ck_squadrons_active_has_members CHECK (
                (is_active AND member_count >= 1) OR (NOT is_active AND member_count = 0)
            )
        )
    """)
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_squadrons_name_lower
        ON squadrons(lower(name))
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS squadron_members (
            id BIGSERIAL PRIMARY KEY,
            squadron_id BIGINT NOT NULL REFERENCES squadrons(id) ON DELETE CASCADE,
            user_id BIGINT NOT NULL REFERENCES web_users(id) ON DELETE CASCADE,
            role VARCHAR(16) NOT NULL DEFAULT 'member' CHECK (role IN ('captain', 'member')),
            joined_at TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT squadron_members_squadron_user_key UNIQUE (squadron_id, user_id),
            CONSTRAINT squadron_members_user_unique UNIQUE (user_id)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS squadron_invitations (
            id BIGSERIAL PRIMARY KEY,
            squadron_id BIGINT NOT NULL REFERENCES squadrons(id) ON DELETE CASCADE,
            user_id BIGINT NOT NULL REFERENCES web_users(id) ON DELETE CASCADE,
            invited_by BIGINT NOT NULL REFERENCES web_users(id),
            status VARCHAR(16) NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'accepted', 'rejected', 'cancelled')),
            created_at TIMESTAMPTZ DEFAULT NOW(),
            responded_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_squadron_invitations_one_pending
        ON squadron_invitations(squadron_id, user_id) WHERE status = 'pending'
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS fair_racing_scores (
            user_id BIGINT PRIMARY KEY REFERENCES web_users(id) ON DELETE CASCADE,
            current_score INTEGER NOT NULL DEFAULT 85 CHECK (current_score BETWEEN 0 AND 100),
            initial_score INTEGER NOT NULL DEFAULT 85,
            updated_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)

    # --- Points ledger (append-only) ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS squadron_points_history (
            id BIGSERIAL PRIMARY KEY,
            squadron_id BIGINT NOT NULL REFERENCES squadrons(id) ON DELETE CASCADE,
            race_event_id VARCHAR(64),
            points_change INTEGER NOT NULL,
            previous_total INTEGER NOT NULL,
            new_total INTEGER NOT NULL,
            reason VARCHAR(500) NOT NULL,
            change_type VARCHAR(24) NOT NULL
                CHECK (change_type IN ('race_event', 'manual_adjustment', 'penalty', 'bonus', 'revert')),
            modified_by BIGINT NOT NULL REFERENCES web_users(id),
            metadata JSONB NOT NULL DEFAULT '{}',
            idempotency_key VARCHAR(256) UNIQUE,
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_points_history_squadron_id
        ON squadron_points_history(squadron_id, id)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_points_history_race_event
        ON squadron_points_history(race_event_id)
    """)
    op.execute("""
        CREATE OR REPLACE FUNCTION squadron_points_history_append_only() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'squadron_points_history is append-only';
        END
        $$ LANGUAGE plpgsql
    """)
    op.execute("""
        DROP TRIGGER IF EXISTS trg_points_history_append_only ON squadron_points_history
    """)
    op.execute("""
        CREATE TRIGGER trg_points_history_append_only
        BEFORE UPDATE OR DELETE ON squadron_points_history
        FOR EACH ROW EXECUTE FUNCTION squadron_points_history_append_only()
    """)


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_points_history_append_only ON squadron_points_history")
    op.execute("DROP FUNCTION IF EXISTS squadron_points_history_append_only()")
    for table in [
        "squadron_points_history",
        "fair_racing_scores",
        "squadron_invitations",
        "squadron_members",
        "squadrons",
        "user_statistics",
        "linkage_requests",
        "driver_results",
        "race_sessions",
        "web_users",
    ]:
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE")  # noqa: S608
