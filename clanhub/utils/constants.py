"""Constants for ClanHub"""

# Version info
APP_VERSION = "1.4.2"
APP_NAME = "ClanHub"

# Rank ladder: (name, settings key of the role ID, days required)
RANK_DEFINITIONS = [
    ('Private', None, 0),
    ('Corporal', 'Corporal', 14),
    ('Sergeant', 'Sergeant', 30),
    ('Lieutenant', 'Lieutenant', 60),
    ('Major', 'Major', 90),
]

DEFAULT_RANK = 'Private'

# Roster status values
MEMBER_STATUSES = ('active', 'inactive')

RESOLUTION_STATUS = {
    'UNRESOLVED': 'unresolved',
    'AUTO': 'resolved_auto',
    'MANUAL': 'resolved_manual',
}

# Promotion queue states
QUEUE_STATUS = {
    'QUEUED': 'queued',
    'CONFIRMED': 'confirmed',
    'PROCESSED': 'processed',
    'FAILED': 'failed',
    'REMOVED': 'removed',
}

OPEN_QUEUE_STATUSES = ('queued', 'confirmed')

# Application states
APPLICATION_STATUS = {
    'PENDING': 'pending',
    'ACCEPTED': 'accepted',
    'REJECTED': 'rejected',
    'REVOKED': 'revoked',
}

# Per-actor cooldowns (seconds)
RATE_LIMITS = {
    'PROMOTION_RUN': 300,
    'ROSTER_IMPORT': 60,
    'DISCORD_SYNC': 30,
    'BAN_REPORT': 12,
    'ARCHIVE_ALL': 20,
}

# Roster settings
ROSTER_SETTINGS = {
    'PAGE_SIZE': 50,
    'MAX_IMPORT_ROWS': 5000,
    'SEARCH_LIMIT': 20,
    'RESOLVE_LIMIT': 25,
    'AMBIGUOUS_CANDIDATE_LIMIT': 20,
    'SYNC_LOG_NAME_LIMIT': 10,
    'AUDIT_NAME_LIMIT': 50,
}

# Discord settings
DISCORD_SETTINGS = {
    'MEMBER_PAGE_LIMIT': 1000,
    'GUILD_CACHE_TTL': 60,
    'CDN_BASE': "https://cdn.discordapp.com",
    'OAUTH_AUTHORIZE_URL': "https://discord.com/api/oauth2/authorize",
    'OAUTH_SCOPE': "identify guilds",
    'USER_AGENT': f"ClanHub/{APP_VERSION}",
}

# Token settings
TOKEN_SETTINGS = {
    'SESSION_COOKIE': 'session',
    'SESSION_TTL': 7 * 24 * 60 * 60,
    'RESOLVE_TTL': 15 * 60,
    'RESOLVE_PURPOSE': 'resolve',
    'ALGORITHM': 'HS256',
}

# Application settings
APPLICATION_SETTINGS = {
    'MAX_NOTE_LENGTH': 1000,
    'NOTE_PREVIEW_LENGTH': 100,
    'REQUIRED_FIELDS': (
        'uid', 'age', 'speaks_english', 'timezone', 'activity', 'level',
        'playstyle', 'banned_for_cheating', 'looking_for', 'has_mic',
        'clan_history',
    ),
    'YES_NO_FIELDS': ('speaks_english', 'banned_for_cheating', 'has_mic'),
    'REVIEW_ACTIONS': ('accept', 'reject', 'retry_create_clan_member'),
}

# Ban report settings
BAN_REPORT_SETTINGS = {
    'DUPLICATE_WINDOW_HOURS': 24,
    'APPEAL_DELAY_MONTHS': 6,
    'CONTEXT_PREVIEW_LENGTH': 500,
    'REASONS': {
        'cheating': "Cheating",
        'toxic_behavior': "Toxic behavior",
        'exploiting': "Exploiting",
        'rule_violation': "Rule violation",
        'false_ban': "Mistake / False ban",
        'other': "Other",
    },
}

# Staff list cache (seconds)
STAFF_LIST_CACHE_TTL = 60

# Message Templates
SYSTEM_MESSAGES = {
    'PROMOTION_ANNOUNCEMENT': """It is promotion time again :weed: 420 :weed:

Here are the Promotions

{promotions}

Big congrats to all of you. You earned it. :muscle:

For information on how to get promoted yourself, please visit ---> #promotions
If you feel like you are due for promotion and didn't get one open a ticket ---> #ticket-logs

Have a Wonderful Day :sunny:
{member_ping}  :420clan:""",

    'APPLICATION_SUBMITTED': """📋 **New application submitted**
Applicant: <@{discord_id}> ({username})
UID: {uid}
Review: {review_url}""",

    'APPLICATION_REVIEWED': """{icon} **Application {decision}**
Applicant: <@{discord_id}> ({username})
By: <@{actor_id}>
Note: {note}""",

    'ARCHIVE_ALL': """🗃️ Archive All executed
Archived: {count} application{plural}
By: <@{actor_id}>
Reason: {reason}""",

    'SYNC_SUMMARY': """🔄 **Discord Membership Sync Executed**
**By:** <@{actor_id}>
**Checked:** {checked} members
**Still in guild:** {still_in_guild}
**Archived (left guild):** {archived}
**Rank updates from Discord:** {ranks_synced}""",

    'BAN_REPORT': """🚨 **Ban Report Submitted**
**Member:** <@{discord_id}> ({username})
**Reason:** {reason}""",

    'AUTO_REVOKE_NOTE': "Auto-revoked: member role no longer present",
}

# Path Configuration
from pathlib import Path
BASE_DIR = Path(__file__).resolve().parent.parent.parent
LOG_DIR = BASE_DIR / "logs"

# Database Settings
DB_SETTINGS = {
    'POOL_SIZE': 10,
    'MAX_OVERFLOW': 5,
    'POOL_TIMEOUT': 30,
    'POOL_RECYCLE': 1800,
    'ECHO': False,
}

# Cache Settings
CACHE_SETTINGS = {
    'REDIS_TIMEOUT': 5,          # Redis operation timeout in seconds
    'REDIS_RETRY_COUNT': 3,      # Number of retries for Redis connection
    'REDIS_RETRY_DELAY': 1,      # Delay between retries in seconds
    'KEY_PREFIX': 'clanhub',
}
