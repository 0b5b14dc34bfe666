"""Ascend gamification tables.

Creates xp_transactions, user_progress, badges, user_badges, challenges,
user_challenges and leaderboard. The users table belongs to the auth
provider and is only created here when missing (local development).

Revision ID: 001_ascend_tables
Revises:
Create Date: 2026-10-18
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_ascend_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Users (auth provider profile table) ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id BIGSERIAL PRIMARY KEY,
            username VARCHAR(64) UNIQUE NOT NULL,
            full_name VARCHAR(128),
            avatar_url TEXT,
            bio VARCHAR(500),
            headline VARCHAR(160),
            company VARCHAR(128),
            location VARCHAR(128),
            website VARCHAR(256),
            is_verified BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- XP ledger (append-only) ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS xp_transactions (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            amount INTEGER NOT NULL CHECK (amount > 0),
            transaction_type VARCHAR(32) NOT NULL,
            reference_id VARCHAR(128),
            reference_type VARCHAR(32),
            metadata JSONB,
            idempotency_key VARCHAR(256) UNIQUE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_xp_transactions_user_created
        ON xp_transactions(user_id, created_at)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_xp_transactions_created
        ON xp_transactions(created_at)
    """)

    # --- Progress summary ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_progress (
            user_id BIGINT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
            level INTEGER NOT NULL DEFAULT 1 CHECK (level >= 1),
            xp BIGINT NOT NULL DEFAULT 0 CHECK (xp >= 0),
            total_challenges_started INTEGER NOT NULL DEFAULT 0,
            challenges_completed INTEGER NOT NULL DEFAULT 0,
            badges_earned INTEGER NOT NULL DEFAULT 0,
            total_xp_earned BIGINT NOT NULL DEFAULT 0,
            profile_completion_percentage INTEGER NOT NULL DEFAULT 0,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- Badges ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS badges (
            id SERIAL PRIMARY KEY,
            slug VARCHAR(64) UNIQUE NOT NULL,
            name VARCHAR(128) NOT NULL,
            description TEXT NOT NULL,
            icon VARCHAR(32) NOT NULL,
            category VARCHAR(32),
            xp_reward INTEGER NOT NULL DEFAULT 0,
            sort_order INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_badges (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            badge_id INTEGER NOT NULL REFERENCES badges(id),
            earned_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            metadata JSONB DEFAULT '{}',
            CONSTRAINT user_badges_user_id_badge_id_key UNIQUE(user_id, badge_id)
        )
    """)

    # --- Challenges ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS challenges (
            id SERIAL PRIMARY KEY,
            title VARCHAR(200) NOT NULL,
            description TEXT NOT NULL,
            category VARCHAR(32) NOT NULL,
            difficulty VARCHAR(16) NOT NULL,
            xp_reward INTEGER NOT NULL CHECK (xp_reward > 0),
            requirements JSONB NOT NULL DEFAULT '{}',
            badge_id INTEGER REFERENCES badges(id),
            start_date TIMESTAMPTZ,
            end_date TIMESTAMPTZ,
            is_active BOOLEAN NOT NULL DEFAULT true,
            is_featured BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_challenges (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            challenge_id INTEGER NOT NULL REFERENCES challenges(id),
            status VARCHAR(16) NOT NULL
                CHECK (status IN ('not_started', 'in_progress', 'completed', 'failed')),
            progress JSONB NOT NULL DEFAULT '{}',
            started_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            xp_earned INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            version INTEGER NOT NULL DEFAULT 1
        )
    """)
    # At most one open attempt per (user, challenge); finished attempts may repeat.
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_user_challenges_open_attempt
        ON user_challenges(user_id, challenge_id)
        WHERE status IN ('not_started', 'in_progress')
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_user_challenges_user
        ON user_challenges(user_id)
    """)

    # --- Leaderboard ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS leaderboard (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            date_range VARCHAR(16) NOT NULL,
            xp BIGINT NOT NULL DEFAULT 0,
            weekly_xp BIGINT NOT NULL DEFAULT 0,
            monthly_xp BIGINT NOT NULL DEFAULT 0,
            rank INTEGER NOT NULL CHECK (rank >= 1),
            level INTEGER NOT NULL DEFAULT 1,
            username VARCHAR(64) NOT NULL,
            full_name VARCHAR(128),
            avatar_url TEXT,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_leaderboard_window_rank UNIQUE(date_range, rank),
            CONSTRAINT uq_leaderboard_window_user UNIQUE(date_range, user_id)
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS leaderboard CASCADE")
    op.execute("DROP TABLE IF EXISTS user_challenges CASCADE")
    op.execute("DROP TABLE IF EXISTS challenges CASCADE")
    op.execute("DROP TABLE IF EXISTS user_badges CASCADE")
    op.execute("DROP TABLE IF EXISTS badges CASCADE")
    op.execute("DROP TABLE IF EXISTS user_progress CASCADE")
    op.execute("DROP TABLE IF EXISTS xp_transactions CASCADE")
