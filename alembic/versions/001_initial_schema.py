"""Initial schema: quests, instances, signups, squads, progression, event log.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_initial_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Quests ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS quests (
            id BIGSERIAL PRIMARY KEY,
            slug VARCHAR(128) UNIQUE NOT NULL,
            title VARCHAR(256) NOT NULL,
            description TEXT,
            creator_id BIGINT,
            constraints JSON NOT NULL DEFAULT '{}',
            objectives JSON NOT NULL DEFAULT '[]',
            default_capacity INTEGER,
            default_squad_size INTEGER,
            default_duration_minutes INTEGER NOT NULL DEFAULT 120,
            base_xp INTEGER NOT NULL DEFAULT 50,
            completion_rule VARCHAR(16) NOT NULL DEFAULT 'per_member',
            requires_approval BOOLEAN NOT NULL DEFAULT false,
            requires_proof BOOLEAN NOT NULL DEFAULT false,
            is_solo BOOLEAN NOT NULL DEFAULT false,
            warm_up_prompt TEXT,
            status VARCHAR(16) NOT NULL DEFAULT 'draft',
            review_status VARCHAR(16) NOT NULL DEFAULT 'draft',
            review_notes TEXT,
            reviewed_by BIGINT,
            reviewed_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- Quest Instances ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS quest_instances (
            id BIGSERIAL PRIMARY KEY,
            quest_id BIGINT NOT NULL REFERENCES quests(id) ON DELETE CASCADE,
            instance_slug VARCHAR(160) NOT NULL,
            scheduled_date DATE NOT NULL,
            start_at TIMESTAMPTZ NOT NULL,
            end_at TIMESTAMPTZ NOT NULL,
            meeting_point VARCHAR(256),
            capacity INTEGER NOT NULL,
            current_signup_count INTEGER NOT NULL DEFAULT 0,
            target_squad_size INTEGER NOT NULL,
            squad_formation_threshold INTEGER,
            warm_up_min_ready_pct INTEGER NOT NULL DEFAULT 100,
            status VARCHAR(16) NOT NULL DEFAULT 'draft',
            previous_status VARCHAR(16),
            paused_at TIMESTAMPTZ,
            paused_reason TEXT,
            cancelled_reason TEXT,
            check_in_opens_at TIMESTAMPTZ NOT NULL,
            check_in_closes_at TIMESTAMPTZ NOT NULL,
            squads_locked BOOLEAN NOT NULL DEFAULT false,
            ledger_frozen BOOLEAN NOT NULL DEFAULT false,
            completed_at TIMESTAMPTZ,
            cancelled_at TIMESTAMPTZ,
            archived_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CHECK (current_signup_count >= 0 AND current_signup_count <= capacity)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_quest_instances_status
        ON quest_instances(status)
    """)

    # --- Signups & Proofs ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS quest_signups (
            id BIGSERIAL PRIMARY KEY,
            instance_id BIGINT NOT NULL REFERENCES quest_instances(id) ON DELETE CASCADE,
            user_id BIGINT NOT NULL,
            status VARCHAR(16) NOT NULL,
            signed_up_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            referred_by_user_id BIGINT,
            checked_in_at TIMESTAMPTZ,
            proof_submitted_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            dropped_at TIMESTAMPTZ,
            no_show_at TIMESTAMPTZ,
            cancel_reason TEXT,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_signup_instance_user UNIQUE (instance_id, user_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_signups_instance_status
        ON quest_signups(instance_id, status, signed_up_at)
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS participant_proofs (
            id BIGSERIAL PRIMARY KEY,
            signup_id BIGINT NOT NULL REFERENCES quest_signups(id) ON DELETE CASCADE,
            proof_type VARCHAR(16) NOT NULL,
            file_url TEXT,
            text TEXT,
            status VARCHAR(16) NOT NULL DEFAULT 'pending',
            reviewed_by BIGINT,
            reviewed_at TIMESTAMPTZ,
            review_notes TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- Squads ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS persistent_squads (
            id BIGSERIAL PRIMARY KEY,
            name VARCHAR(64) NOT NULL,
            leader_id BIGINT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            archived_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS persistent_squad_members (
            id BIGSERIAL PRIMARY KEY,
            squad_id BIGINT NOT NULL REFERENCES persistent_squads(id) ON DELETE CASCADE,
            user_id BIGINT NOT NULL,
            role VARCHAR(16) NOT NULL DEFAULT 'member',
            status VARCHAR(16) NOT NULL DEFAULT 'active',
            joined_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_persistent_member UNIQUE (squad_id, user_id)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS quest_squads (
            id BIGSERIAL PRIMARY KEY,
            instance_id BIGINT NOT NULL REFERENCES quest_instances(id) ON DELETE CASCADE,
            name VARCHAR(64) NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'draft',
            compatibility_score DOUBLE PRECISION,
            persistent_squad_id BIGINT REFERENCES persistent_squads(id) ON DELETE SET NULL,
            warm_up_started_at TIMESTAMPTZ,
            ready_at TIMESTAMPTZ,
            locked_at TIMESTAMPTZ,
            locked_by BIGINT,
            approval_notes TEXT,
            cancel_reason TEXT,
            archived_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_quest_squads_instance
        ON quest_squads(instance_id)
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS quest_squad_members (
            id BIGSERIAL PRIMARY KEY,
            squad_id BIGINT NOT NULL REFERENCES quest_squads(id) ON DELETE CASCADE,
            user_id BIGINT NOT NULL,
            signup_id BIGINT REFERENCES quest_signups(id) ON DELETE SET NULL,
            role VARCHAR(16) NOT NULL DEFAULT 'member',
            status VARCHAR(16) NOT NULL DEFAULT 'active',
            prompt_response TEXT,
            prompt_answered_at TIMESTAMPTZ,
            readiness_confirmed_at TIMESTAMPTZ,
            joined_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            left_at TIMESTAMPTZ,
            CONSTRAINT uq_squad_member UNIQUE (squad_id, user_id)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS clique_removal_votes (
            id BIGSERIAL PRIMARY KEY,
            squad_id BIGINT NOT NULL REFERENCES quest_squads(id) ON DELETE CASCADE,
            voter_id BIGINT NOT NULL,
            target_user_id BIGINT NOT NULL,
            reason TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_removal_vote UNIQUE (squad_id, voter_id, target_user_id)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS referrals (
            id BIGSERIAL PRIMARY KEY,
            referrer_user_id BIGINT NOT NULL,
            referred_user_id BIGINT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_referral_pair UNIQUE (referrer_user_id, referred_user_id)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_profiles (
            user_id BIGINT PRIMARY KEY,
            display_name VARCHAR(64),
            traits JSON NOT NULL DEFAULT '{}',
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- Progression ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS xp_transactions (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL,
            amount INTEGER NOT NULL,
            source VARCHAR(32) NOT NULL,
            source_id VARCHAR(128) NOT NULL DEFAULT '',
            description VARCHAR(256),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_xp_idempotency UNIQUE (user_id, source, source_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_xp_transactions_user
        ON xp_transactions(user_id, created_at DESC)
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_xp (
            user_id BIGINT PRIMARY KEY,
            total_xp INTEGER NOT NULL DEFAULT 0,
            level INTEGER NOT NULL DEFAULT 1,
            level_name VARCHAR(32) NOT NULL DEFAULT 'Explorer',
            ledger_frozen BOOLEAN NOT NULL DEFAULT false,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS streak_rules (
            id BIGSERIAL PRIMARY KEY,
            name VARCHAR(64) UNIQUE NOT NULL,
            interval VARCHAR(16) NOT NULL,
            grace_periods INTEGER NOT NULL DEFAULT 0,
            xp_bonus INTEGER NOT NULL DEFAULT 0,
            is_active BOOLEAN NOT NULL DEFAULT true
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_streaks (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL,
            rule_id BIGINT NOT NULL REFERENCES streak_rules(id) ON DELETE CASCADE,
            current_count INTEGER NOT NULL DEFAULT 0,
            longest_count INTEGER NOT NULL DEFAULT 0,
            grace_remaining INTEGER NOT NULL DEFAULT 0,
            last_activity_at TIMESTAMPTZ,
            streak_started_at TIMESTAMPTZ,
            streak_broken_at TIMESTAMPTZ,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_user_streak_rule UNIQUE (user_id, rule_id)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS achievement_templates (
            id BIGSERIAL PRIMARY KEY,
            slug VARCHAR(64) UNIQUE NOT NULL,
            name VARCHAR(128) NOT NULL,
            description TEXT,
            criteria JSON NOT NULL,
            xp_reward INTEGER NOT NULL DEFAULT 0,
            is_active BOOLEAN NOT NULL DEFAULT true
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_achievements (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL,
            achievement_id BIGINT NOT NULL REFERENCES achievement_templates(id) ON DELETE CASCADE,
            unlocked_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_user_achievement UNIQUE (user_id, achievement_id)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS trust_scores (
            id BIGSERIAL PRIMARY KEY,
            entity_type VARCHAR(16) NOT NULL,
            entity_id BIGINT NOT NULL,
            successful_quests INTEGER NOT NULL DEFAULT 0,
            cancelled_quests INTEGER NOT NULL DEFAULT 0,
            no_show_quests INTEGER NOT NULL DEFAULT 0,
            flags_received INTEGER NOT NULL DEFAULT 0,
            warnings_issued INTEGER NOT NULL DEFAULT 0,
            ratings_count INTEGER NOT NULL DEFAULT 0,
            avg_rating DOUBLE PRECISION,
            score DOUBLE PRECISION NOT NULL DEFAULT 50,
            last_calculated_at TIMESTAMPTZ,
            CONSTRAINT uq_trust_entity UNIQUE (entity_type, entity_id)
        )
    """)

    # --- Event Log (append-only) ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS ops_events (
            id BIGSERIAL PRIMARY KEY,
            event_type VARCHAR(40) NOT NULL,
            actor_type VARCHAR(16) NOT NULL DEFAULT 'system',
            actor_id BIGINT,
            instance_id BIGINT,
            squad_id BIGINT,
            target_user_id BIGINT,
            before_state JSON,
            after_state JSON,
            payload JSON NOT NULL DEFAULT '{}',
            correlation_id VARCHAR(64),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_ops_events_instance
        ON ops_events(instance_id, created_at)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_ops_events_correlation
        ON ops_events(correlation_id)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS ops_events CASCADE")
    op.execute("DROP TABLE IF EXISTS trust_scores CASCADE")
    op.execute("DROP TABLE IF EXISTS user_achievements CASCADE")
    op.execute("DROP TABLE IF EXISTS achievement_templates CASCADE")
    op.execute("DROP TABLE IF EXISTS user_streaks CASCADE")
    op.execute("DROP TABLE IF EXISTS streak_rules CASCADE")
    op.execute("DROP TABLE IF EXISTS user_xp CASCADE")
    op.execute("DROP TABLE IF EXISTS xp_transactions CASCADE")
    op.execute("DROP TABLE IF EXISTS user_profiles CASCADE")
    op.execute("DROP TABLE IF EXISTS referrals CASCADE")
    op.execute("DROP TABLE IF EXISTS clique_removal_votes CASCADE")
    op.execute("DROP TABLE IF EXISTS quest_squad_members CASCADE")
    op.execute("DROP TABLE IF EXISTS quest_squads CASCADE")
    op.execute("DROP TABLE IF EXISTS persistent_squad_members CASCADE")
    op.execute("DROP TABLE IF EXISTS persistent_squads CASCADE")
    op.execute("DROP TABLE IF EXISTS participant_proofs CASCADE")
    op.execute("DROP TABLE IF EXISTS quest_signups CASCADE")
    op.execute("DROP TABLE IF EXISTS quest_instances CASCADE")
    op.execute("DROP TABLE IF EXISTS quests CASCADE")
