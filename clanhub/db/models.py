from typing import Any, Dict
from sqlalchemy import Column, Integer, String, Boolean, Date, DateTime, ForeignKey, Text, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

class RowMixin:
    """Plain-dict export of every mapped column"""

    def to_dict(self) -> Dict[str, Any]:
        return {c.name: getattr(self, c.name) for c in self.__table__.columns}

class TimestampMixin:
    """Mixin for adding timestamp columns"""
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

class ClanMember(Base, RowMixin, TimestampMixin):
    """One row of the clan roster"""
    __tablename__ = 'clan_list_members'

    id = Column(Integer, primary_key=True)
    discord_name = Column(String, nullable=False)
    discord_id = Column(String, index=True)
    ign = Column(String, nullable=False)
    uid = Column(String, unique=True, nullable=False)
    join_date = Column(Date, nullable=False)
    status = Column(String(20), nullable=False, default='active')
    has_420_tag = Column(Boolean, nullable=False, default=False)

    # Rank and tenure
    rank_current = Column(String(20), nullable=False, default='Private')
    rank_next = Column(String(20))
    frozen_days = Column(Integer, nullable=False, default=0)
    counting_since = Column(DateTime(timezone=True))
    promote_eligible = Column(Boolean, nullable=False, default=False)
    promote_reason = Column(Text)

    # Discord resolution
    needs_resolution = Column(Boolean, nullable=False, default=True)
    resolution_status = Column(String(20), nullable=False, default='unresolved')
    resolved_at = Column(DateTime(timezone=True))
    resolved_by = Column(String)

    # Guild presence and archiving
    in_guild = Column(Boolean, nullable=False, default=True)
    last_guild_check_at = Column(DateTime(timezone=True))
    left_guild_at = Column(DateTime(timezone=True))
    archived_at = Column(DateTime(timezone=True), index=True)
    archived_by = Column(String)
    archive_reason = Column(Text)

    source = Column(String(20), nullable=False, default='manual')

class Application(Base, RowMixin):
    """Membership application; status is historical, access comes from live roles"""
    __tablename__ = 'applications'

    id = Column(Integer, primary_key=True)
    discord_id = Column(String, nullable=False, index=True)
    discord_name = Column(String)
    status = Column(String(20), nullable=False, default='pending')

    # Answers
    uid = Column(String)
    age = Column(Integer)
    speaks_english = Column(Boolean)
    timezone = Column(String)
    activity = Column(Text)
    level = Column(String)
    playstyle = Column(Text)
    banned_for_cheating = Column(Boolean)
    looking_for = Column(Text)
    has_mic = Column(Boolean)
    clan_history = Column(Text)

    reviewer_note = Column(Text)
    reviewed_at = Column(DateTime(timezone=True))
    reviewed_by = Column(String)
    archived_at = Column(DateTime(timezone=True))
    archived_by = Column(String)
    archive_reason = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

class ApplicationNote(Base, RowMixin):
    """Staff note attached to an application"""
    __tablename__ = 'application_notes'

    id = Column(Integer, primary_key=True)
    application_id = Column(Integer, ForeignKey('applications.id', ondelete='CASCADE'), nullable=False, index=True)
    note = Column(Text, nullable=False)
    created_by = Column(String, nullable=False)
    created_by_username = Column(String)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

class PromotionQueueItem(Base, RowMixin):
    """One pending, applied or abandoned promotion"""
    __tablename__ = 'promotion_queue'

    id = Column(Integer, primary_key=True)
    member_id = Column(Integer, ForeignKey('clan_list_members.id', ondelete='CASCADE'), nullable=False)
    discord_id = Column(String)
    discord_name = Column(String)
    ign = Column(String)
    uid = Column(String)
    from_rank = Column(String(20), nullable=False)
    to_rank = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default='queued')
    error = Column(Text)
    created_by = Column(String)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    confirmed_by = Column(String)
    confirmed_at = Column(DateTime(timezone=True))
    processed_by = Column(String)
    processed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index('ix_promotion_queue_status', 'status'),
    )

class AuditLogEntry(Base, RowMixin):
    """Append-only operator audit trail"""
    __tablename__ = 'audit_log'

    id = Column(Integer, primary_key=True)
    action = Column(String(64), nullable=False)
    actor_id = Column(String)
    target_id = Column(String)
    details = Column(JSONB)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

class BanReport(Base, RowMixin):
    """Self-reported ban with its appeal date"""
    __tablename__ = 'ban_reports'

    id = Column(Integer, primary_key=True)
    discord_id = Column(String, nullable=False, index=True)
    discord_name = Column(String)
    reason = Column(String(32), nullable=False)
    custom_reason = Column(Text)
    additional_context = Column(Text)
    submitted_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    appeal_available_at = Column(DateTime(timezone=True), nullable=False)
