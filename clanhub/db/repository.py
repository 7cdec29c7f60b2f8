from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List, Dict, Any, Iterable, Set, Tuple
import logging
from sqlalchemy import select, update, delete, func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from .models import (
    ClanMember, Application, ApplicationNote, PromotionQueueItem, AuditLogEntry, BanReport
)

logger = logging.getLogger('ClanHub')

class MemberRepository:
    """Repository for clan roster rows"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _fetch(self, member_id: int) -> Optional[ClanMember]:
        result = await self.session.execute(select(ClanMember).where(ClanMember.id == member_id))
        return result.scalar_one_or_none()

    async def get(self, member_id: int) -> Optional[Dict[str, Any]]:
        """Get member by row ID"""
        try:
            member = await self._fetch(member_id)
            return member.to_dict() if member else None
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving member {member_id}: {e}")
            raise

    async def get_by_uid(self, uid: str) -> Optional[Dict[str, Any]]:
        """Get member by game UID"""
        try:
            result = await self.session.execute(select(ClanMember).where(ClanMember.uid == uid))
            member = result.scalar_one_or_none()
            return member.to_dict() if member else None
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving member by uid {uid}: {e}")
            raise

    async def list_page(self, search: Optional[str] = None, status: Optional[str] = None,
                        archived: bool = False, eligible_only: bool = False,
                        limit: int = 50, offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        """One page of members plus the total matching count"""
        try:
            conditions = [
                ClanMember.archived_at.isnot(None) if archived else ClanMember.archived_at.is_(None)
            ]
            if status:
                conditions.append(ClanMember.status == status)
            if eligible_only:
                conditions.append(ClanMember.promote_eligible.is_(True))
            if search:
                pattern = f"%{search}%"
                conditions.append(or_(
                    ClanMember.discord_name.ilike(pattern),
                    ClanMember.ign.ilike(pattern),
                    ClanMember.uid.ilike(pattern),
                    ClanMember.discord_id.ilike(pattern),
                ))

            total = await self.session.scalar(
                select(func.count()).select_from(ClanMember).where(*conditions)
            )
            result = await self.session.execute(
                select(ClanMember).where(*conditions)
                .order_by(ClanMember.discord_name, ClanMember.id)
                .limit(limit).offset(offset)
            )
            return [m.to_dict() for m in result.scalars().all()], total or 0

        except SQLAlchemyError as e:
            logger.error(f"Error listing members: {e}")
            raise

    async def list_members_for_promotion(self) -> List[Dict[str, Any]]:
        """Every member that is not archived"""
        try:
            result = await self.session.execute(
                select(ClanMember).where(ClanMember.archived_at.is_(None)).order_by(ClanMember.id)
            )
            return [m.to_dict() for m in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error listing active members: {e}")
            raise

    async def list_unresolved(self) -> List[Dict[str, Any]]:
        """Non-archived members missing a Discord ID or flagged for resolution"""
        try:
            result = await self.session.execute(
                select(ClanMember).where(
                    ClanMember.archived_at.is_(None),
                    or_(
                        ClanMember.discord_id.is_(None),
                        ClanMember.discord_id == '',
                        ClanMember.needs_resolution.is_(True),
                    ),
                ).order_by(ClanMember.id)
            )
            return [m.to_dict() for m in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error listing unresolved members: {e}")
            raise

    async def insert(self, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            member = ClanMember(**data)
            self.session.add(member)
            await self.session.commit()
            await self.session.refresh(member)
            return member.to_dict()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Error creating member: {e}")
            raise

    async def update(self, member_id: int, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            member = await self._fetch(member_id)
            if member is None:
                return None
            for key, value in fields.items():
                setattr(member, key, value)
            await self.session.commit()
            await self.session.refresh(member)
            return member.to_dict()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Error updating member {member_id}: {e}")
            raise

    async def delete(self, member_id: int) -> bool:
        try:
            result = await self.session.execute(delete(ClanMember).where(ClanMember.id == member_id))
            await self.session.commit()
            return result.rowcount > 0
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Error deleting member {member_id}: {e}")
            raise

class ApplicationRepository:
    """Repository for applications"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _fetch(self, application_id: int) -> Optional[Application]:
        result = await self.session.execute(
            select(Application).where(Application.id == application_id)
        )
        return result.scalar_one_or_none()

    async def get(self, application_id: int) -> Optional[Dict[str, Any]]:
        try:
            application = await self._fetch(application_id)
            return application.to_dict() if application else None
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving application {application_id}: {e}")
            raise

    async def latest_for(self, discord_id: str) -> Optional[Dict[str, Any]]:
        """Newest non-archived application of a user"""
        try:
            result = await self.session.execute(
                select(Application)
                .where(Application.discord_id == discord_id, Application.archived_at.is_(None))
                .order_by(Application.created_at.desc())
                .limit(1)
            )
            application = result.scalar_one_or_none()
            return application.to_dict() if application else None
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving latest application for {discord_id}: {e}")
            raise

    async def find_open(self, discord_id: str) -> Optional[Dict[str, Any]]:
        """Newest pending or accepted application of a user"""
        try:
            result = await self.session.execute(
                select(Application)
                .where(
                    Application.discord_id == discord_id,
                    Application.status.in_(('pending', 'accepted')),
                )
                .order_by(Application.created_at.desc())
                .limit(1)
            )
            application = result.scalar_one_or_none()
            return application.to_dict() if application else None
        except SQLAlchemyError as e:
            logger.error(f"Error checking open applications for {discord_id}: {e}")
            raise

    async def insert(self, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            application = Application(**data)
            self.session.add(application)
            await self.session.commit()
            await self.session.refresh(application)
            return application.to_dict()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Error creating application: {e}")
            raise

    async def update(self, application_id: int, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            application = await self._fetch(application_id)
            if application is None:
                return None
            for key, value in fields.items():
                setattr(application, key, value)
            await self.session.commit()
            await self.session.refresh(application)
            return application.to_dict()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Error updating application {application_id}: {e}")
            raise

    async def list_applications(self, status: Optional[str] = None,
                                include_archived: bool = False) -> List[Dict[str, Any]]:
        try:
            query = select(Application).order_by(Application.created_at.desc())
            if status:
                query = query.where(Application.status == status)
            if not include_archived:
                query = query.where(Application.archived_at.is_(None))
            result = await self.session.execute(query)
            return [a.to_dict() for a in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error listing applications: {e}")
            raise

    async def count(self, status: str) -> int:
        try:
            total = await self.session.scalar(
                select(func.count()).select_from(Application).where(
                    Application.status == status, Application.archived_at.is_(None)
                )
            )
            return total or 0
        except SQLAlchemyError as e:
            logger.error(f"Error counting {status} applications: {e}")
            raise

    async def list_uid_mappings(self) -> List[Dict[str, Any]]:
        """uid/discord_id pairs from accepted and pending applications"""
        try:
            result = await self.session.execute(
                select(Application.uid, Application.discord_id).where(
                    Application.status.in_(('accepted', 'pending')),
                    Application.uid.isnot(None),
                )
            )
            return [{'uid': uid, 'discord_id': discord_id} for uid, discord_id in result.all()]
        except SQLAlchemyError as e:
            logger.error(f"Error loading application uid map: {e}")
            raise

    async def archive_decided(self, actor_id: str, reason: str, now: datetime) -> int:
        """Archive every accepted or rejected application that is not archived yet"""
        try:
            result = await self.session.execute(
                update(Application)
                .where(
                    Application.status.in_(('accepted', 'rejected')),
                    Application.archived_at.is_(None),
                )
                .values(archived_at=now, archived_by=actor_id, archive_reason=reason)
            )
            await self.session.commit()
            return result.rowcount
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Error archiving decided applications: {e}")
            raise

class NoteRepository:
    """Repository for staff notes on applications"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, application_id: int, note: str, created_by: str,
                  created_by_username: Optional[str] = None) -> Dict[str, Any]:
        try:
            row = ApplicationNote(
                application_id=application_id,
                note=note,
                created_by=created_by,
                created_by_username=created_by_username,
            )
            self.session.add(row)
            await self.session.commit()
            await self.session.refresh(row)
            return row.to_dict()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Error adding note to application {application_id}: {e}")
            raise

    async def list_for(self, application_ids: Iterable[int]) -> Dict[int, List[Dict[str, Any]]]:
        """Notes grouped by application, newest first"""
        ids = list(application_ids)
        if not ids:
            return {}
        try:
            result = await self.session.execute(
                select(ApplicationNote)
                .where(ApplicationNote.application_id.in_(ids))
                .order_by(ApplicationNote.created_at.desc())
            )
            grouped: Dict[int, List[Dict[str, Any]]] = {}
            for note in result.scalars().all():
                grouped.setdefault(note.application_id, []).append(note.to_dict())
            return grouped
        except SQLAlchemyError as e:
            logger.error(f"Error listing application notes: {e}")
            raise

class PromotionQueueRepository:
    """Repository for the promotion queue"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _fetch(self, item_id: int) -> Optional[PromotionQueueItem]:
        result = await self.session.execute(
            select(PromotionQueueItem).where(PromotionQueueItem.id == item_id)
        )
        return result.scalar_one_or_none()

    async def get(self, item_id: int) -> Optional[Dict[str, Any]]:
        try:
            item = await self._fetch(item_id)
            return item.to_dict() if item else None
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving queue item {item_id}: {e}")
            raise

    async def list_items(self, statuses: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        try:
            query = select(PromotionQueueItem).order_by(PromotionQueueItem.id)
            if statuses:
                query = query.where(PromotionQueueItem.status.in_(list(statuses)))
            result = await self.session.execute(query)
            return [i.to_dict() for i in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error listing promotion queue: {e}")
            raise

    async def open_member_ids(self) -> Set[int]:
        """Members with a queued or confirmed item"""
        try:
            result = await self.session.execute(
                select(PromotionQueueItem.member_id).where(
                    PromotionQueueItem.status.in_(('queued', 'confirmed'))
                )
            )
            return set(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error loading queued member ids: {e}")
            raise

    async def insert_many(self, items: List[Dict[str, Any]]) -> int:
        try:
            self.session.add_all([PromotionQueueItem(**item) for item in items])
            await self.session.commit()
            return len(items)
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Error queueing promotions: {e}")
            raise

    async def update(self, item_id: int, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            item = await self._fetch(item_id)
            if item is None:
                return None
            for key, value in fields.items():
                setattr(item, key, value)
            await self.session.commit()
            await self.session.refresh(item)
            return item.to_dict()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Error updating queue item {item_id}: {e}")
            raise

    async def delete_open(self) -> int:
        """Delete every queued and confirmed item"""
        try:
            result = await self.session.execute(
                delete(PromotionQueueItem).where(
                    PromotionQueueItem.status.in_(('queued', 'confirmed'))
                )
            )
            await self.session.commit()
            return result.rowcount
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Error clearing promotion queue: {e}")
            raise

class AuditRepository:
    """Append-only audit trail"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def log(self, action: str, actor_id: Optional[str], target_id: Optional[str] = None,
                  details: Optional[Dict[str, Any]] = None) -> None:
        try:
            self.session.add(AuditLogEntry(
                action=action,
                actor_id=actor_id,
                target_id=target_id,
                details=details or {},
            ))
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Error writing audit entry {action}: {e}")
            raise

class BanReportRepository:
    """Repository for ban reports"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_recent(self, discord_id: str, since: datetime) -> Optional[Dict[str, Any]]:
        try:
            result = await self.session.execute(
                select(BanReport)
                .where(BanReport.discord_id == discord_id, BanReport.submitted_at >= since)
                .limit(1)
            )
            report = result.scalar_one_or_none()
            return report.to_dict() if report else None
        except SQLAlchemyError as e:
            logger.error(f"Error checking recent ban reports for {discord_id}: {e}")
            raise

    async def insert(self, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            report = BanReport(**data)
            self.session.add(report)
            await self.session.commit()
            await self.session.refresh(report)
            return report.to_dict()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Error saving ban report: {e}")
            raise

@dataclass
class Repositories:
    """All repositories bound to one session"""
    roster: MemberRepository
    applications: ApplicationRepository
    notes: NoteRepository
    queue: PromotionQueueRepository
    audit: AuditRepository
    ban_reports: BanReportRepository

    @classmethod
    def from_session(cls, session: AsyncSession) -> 'Repositories':
        return cls(
            roster=MemberRepository(session),
            applications=ApplicationRepository(session),
            notes=NoteRepository(session),
            queue=PromotionQueueRepository(session),
            audit=AuditRepository(session),
            ban_reports=BanReportRepository(session),
        )
