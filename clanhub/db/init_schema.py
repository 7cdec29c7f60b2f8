"""Schema initialization for ClanHub"""

import logging
import asyncpg

logger = logging.getLogger('ClanHub')

SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS clan_list_members (
        id SERIAL PRIMARY KEY,
        discord_name TEXT NOT NULL,
        discord_id TEXT,
        ign TEXT NOT NULL,
        uid TEXT UNIQUE NOT NULL,
        join_date DATE NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'active',
        has_420_tag BOOLEAN NOT NULL DEFAULT FALSE,
        rank_current VARCHAR(20) NOT NULL DEFAULT 'Private',
        rank_next VARCHAR(20),
        frozen_days INTEGER NOT NULL DEFAULT 0,
        counting_since TIMESTAMP WITH TIME ZONE,
        promote_eligible BOOLEAN NOT NULL DEFAULT FALSE,
        promote_reason TEXT,
        needs_resolution BOOLEAN NOT NULL DEFAULT TRUE,
        resolution_status VARCHAR(20) NOT NULL DEFAULT 'unresolved',
        resolved_at TIMESTAMP WITH TIME ZONE,
        resolved_by TEXT,
        in_guild BOOLEAN NOT NULL DEFAULT TRUE,
        last_guild_check_at TIMESTAMP WITH TIME ZONE,
        left_guild_at TIMESTAMP WITH TIME ZONE,
        archived_at TIMESTAMP WITH TIME ZONE,
        archived_by TEXT,
        archive_reason TEXT,
        source VARCHAR(20) NOT NULL DEFAULT 'manual',
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT CURRENT_TIMESTAMP
    );
    CREATE INDEX IF NOT EXISTS ix_clan_list_members_discord_id ON clan_list_members (discord_id);
    CREATE INDEX IF NOT EXISTS ix_clan_list_members_archived_at ON clan_list_members (archived_at);

    CREATE TABLE IF NOT EXISTS applications (
        id SERIAL PRIMARY KEY,
        discord_id TEXT NOT NULL,
        discord_name TEXT,
        status VARCHAR(20) NOT NULL DEFAULT 'pending',
        uid TEXT,
        age INTEGER,
        speaks_english BOOLEAN,
        timezone TEXT,
        activity TEXT,
        level TEXT,
        playstyle TEXT,
        banned_for_cheating BOOLEAN,
        looking_for TEXT,
        has_mic BOOLEAN,
        clan_history TEXT,
        reviewer_note TEXT,
        reviewed_at TIMESTAMP WITH TIME ZONE,
        reviewed_by TEXT,
        archived_at TIMESTAMP WITH TIME ZONE,
        archived_by TEXT,
        archive_reason TEXT,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT CURRENT_TIMESTAMP
    );
    CREATE INDEX IF NOT EXISTS ix_applications_discord_id ON applications (discord_id);
    ALTER TABLE applications ADD COLUMN IF NOT EXISTS reviewed_by TEXT;

    CREATE TABLE IF NOT EXISTS application_notes (
        id SERIAL PRIMARY KEY,
        application_id INTEGER NOT NULL REFERENCES applications(id) ON DELETE CASCADE,
        note TEXT NOT NULL,
        created_by TEXT NOT NULL,
        created_by_username TEXT,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT CURRENT_TIMESTAMP
    );
    CREATE INDEX IF NOT EXISTS ix_application_notes_application_id ON application_notes (application_id);

    CREATE TABLE IF NOT EXISTS promotion_queue (
        id SERIAL PRIMARY KEY,
        member_id INTEGER NOT NULL REFERENCES clan_list_members(id) ON DELETE CASCADE,
        discord_id TEXT,
        discord_name TEXT,
        ign TEXT,
        uid TEXT,
        from_rank VARCHAR(20) NOT NULL,
        to_rank VARCHAR(20) NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'queued',
        error TEXT,
        created_by TEXT,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT CURRENT_TIMESTAMP,
        confirmed_by TEXT,
        confirmed_at TIMESTAMP WITH TIME ZONE,
        processed_by TEXT,
        processed_at TIMESTAMP WITH TIME ZONE
    );
    CREATE INDEX IF NOT EXISTS ix_promotion_queue_status ON promotion_queue (status);

    CREATE TABLE IF NOT EXISTS audit_log (
        id SERIAL PRIMARY KEY,
        action VARCHAR(64) NOT NULL,
        actor_id TEXT,
        target_id TEXT,
        details JSONB,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS ban_reports (
        id SERIAL PRIMARY KEY,
        discord_id TEXT NOT NULL,
        discord_name TEXT,
        reason VARCHAR(32) NOT NULL,
        custom_reason TEXT,
        additional_context TEXT,
        submitted_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT CURRENT_TIMESTAMP,
        appeal_available_at TIMESTAMP WITH TIME ZONE NOT NULL
    );
    CREATE INDEX IF NOT EXISTS ix_ban_reports_discord_id ON ban_reports (discord_id);
"""

async def init_schema(settings):
    """Create any missing tables; existing data is left untouched"""
    conn = None
    try:
        # Connect directly with asyncpg to run DDL
        conn = await asyncpg.connect(settings.database_url)
        async with conn.transaction():
            await conn.execute(SCHEMA_SQL)
        logger.info("ClanHub schema initialization complete")

    except Exception as e:
        logger.error(f"Error initializing schema: {e}")
        raise
    finally:
        if conn is not None:
            await conn.close()
