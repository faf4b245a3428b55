"""
Knowledge Store
Data access for knowledge entries, revision history and atomic usage tracking
"""
import logging
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import update, case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.exceptions import NotFoundError, InvalidInputError
from app.models.knowledge import KnowledgeEntry, KnowledgeEntryRevision, KnowledgeSource
from app.services.text_normalizer import normalize_text, unique_keywords

logger = logging.getLogger(__name__)


class KnowledgeStore:
    """Versioned knowledge entries behind explicit increment operations"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, knowledge_id: uuid.UUID) -> KnowledgeEntry:
        entry = self.db.query(KnowledgeEntry).filter(KnowledgeEntry.id == knowledge_id).first()
        if not entry:
            raise NotFoundError(f"Knowledge entry {knowledge_id} not found")
        return entry

    def list_active(self) -> List[KnowledgeEntry]:
        """Fresh read of all active entries; never served from an in-process cache"""
        return self.db.query(KnowledgeEntry).filter(
            KnowledgeEntry.is_active == True
        ).order_by(KnowledgeEntry.created_at, KnowledgeEntry.id).all()

    def list_entries(
        self,
        category: Optional[str] = None,
        source: Optional[KnowledgeSource] = None,
        is_active: Optional[bool] = None
    ) -> List[KnowledgeEntry]:
        query = self.db.query(KnowledgeEntry)
        if category:
            query = query.filter(KnowledgeEntry.category == category)
        if source:
            query = query.filter(KnowledgeEntry.source == source)
        if is_active is not None:
            query = query.filter(KnowledgeEntry.is_active == is_active)

        entries = query.all()
        entries.sort(key=lambda e: (-e.success_rate, -(e.priority or 0), str(e.id)))
        return entries

    def find_by_pattern(self, question: str) -> Optional[KnowledgeEntry]:
        """Entry (active or not) whose normalized pattern equals the normalized question"""
        normalized = normalize_text(question)
        if not normalized:
            return None
        candidates = self.db.query(KnowledgeEntry).order_by(
            KnowledgeEntry.created_at, KnowledgeEntry.id
        ).all()
        for entry in candidates:
            if normalize_text(entry.pattern) == normalized:
                return entry
        return None

    def create_entry(
        self,
        pattern: str,
        answer: str,
        category: str = "general",
        keywords: Optional[List[str]] = None,
        source: KnowledgeSource = KnowledgeSource.MANUAL,
        source_id: Optional[str] = None,
        confidence_threshold: float = 0.8,
        priority: int = 0,
        language: str = "de",
        initial_success_count: int = 0,
        commit: bool = True
    ) -> KnowledgeEntry:
        """
        Create an entry and its first revision.

        initial_success_count carries over successes observed before the
        entry existed (e.g. a helpful improved answer); without it a new
        entry has no success rate and never passes the gate.
        """
        if not pattern or not pattern.strip() or not answer or not answer.strip():
            raise InvalidInputError("Knowledge entries need a pattern and an answer")
        if not normalize_text(pattern):
            raise InvalidInputError("Knowledge pattern has no matchable text")
        if not 0.0 <= confidence_threshold <= 1.0:
            raise InvalidInputError("confidence_threshold must be between 0 and 1")

        entry = KnowledgeEntry(
            id=uuid.uuid4(),
            pattern=pattern.strip(),
            answer=answer.strip(),
            category=category or "general",
            keywords=[kw.lower() for kw in keywords] if keywords else unique_keywords(pattern),
            source=source,
            source_id=source_id,
            confidence_threshold=confidence_threshold,
            priority=priority,
            language=language,
            version=1,
            is_active=True,
            usage_count=0,
            success_count=max(initial_success_count, 0),
            failure_count=0
        )
        self.db.add(entry)
        self.db.add(KnowledgeEntryRevision(
            knowledge_id=entry.id,
            version=1,
            pattern=entry.pattern,
            answer=entry.answer,
            change_source=source.value
        ))
        if commit:
            self.db.commit()
            self.db.refresh(entry)
        else:
            self.db.flush()
        return entry

    def update_entry(
        self,
        knowledge_id: uuid.UUID,
        answer: Optional[str] = None,
        pattern: Optional[str] = None,
        keywords: Optional[List[str]] = None,
        category: Optional[str] = None,
        confidence_threshold: Optional[float] = None,
        priority: Optional[int] = None,
        is_active: Optional[bool] = None,
        change_source: str = "manual",
        commit: bool = True
    ) -> KnowledgeEntry:
        """
        Edit an entry. Changes to pattern or answer bump the version and
        write a revision row; counters are never touched here.
        """
        if pattern is not None and pattern.strip() and not normalize_text(pattern):
            raise InvalidInputError("Knowledge pattern has no matchable text")
        entry = self.get(knowledge_id)
        content_changed = False

        if answer is not None and answer.strip() and answer.strip() != entry.answer:
            entry.answer = answer.strip()
            content_changed = True
        if pattern is not None and pattern.strip() and pattern.strip() != entry.pattern:
            entry.pattern = pattern.strip()
            content_changed = True
        if keywords is not None:
            entry.keywords = [kw.lower() for kw in keywords]
        if category is not None:
            entry.category = category
        if confidence_threshold is not None:
            if not 0.0 <= confidence_threshold <= 1.0:
                raise InvalidInputError("confidence_threshold must be between 0 and 1")
            entry.confidence_threshold = confidence_threshold
        if priority is not None:
            entry.priority = priority
        if is_active is not None:
            entry.is_active = is_active

        entry.last_updated = datetime.utcnow()
        if content_changed:
            entry.version = (entry.version or 1) + 1
            self.db.add(KnowledgeEntryRevision(
                knowledge_id=entry.id,
                version=entry.version,
                pattern=entry.pattern,
                answer=entry.answer,
                change_source=change_source
            ))

        if commit:
            self.db.commit()
            self.db.refresh(entry)
        else:
            self.db.flush()
        return entry

    def get_history(self, knowledge_id: uuid.UUID) -> List[KnowledgeEntryRevision]:
        return self.db.query(KnowledgeEntryRevision).filter(
            KnowledgeEntryRevision.knowledge_id == knowledge_id
        ).order_by(KnowledgeEntryRevision.version.desc()).all()

    def track_usage(self, knowledge_id: uuid.UUID, was_successful: bool) -> bool:
        """
        Atomically count one use of an entry and touch last_used_at.

        Runs as a single UPDATE so concurrent conversations never lose an
        increment. Failures are logged and swallowed; returns False then.
        """
        values = {
            "usage_count": KnowledgeEntry.usage_count + 1,
            "last_used_at": datetime.utcnow(),
        }
        if was_successful:
            values["success_count"] = KnowledgeEntry.success_count + 1
        else:
            values["failure_count"] = KnowledgeEntry.failure_count + 1
        return self._execute_counter_update(knowledge_id, values, "track_usage")

    def revoke_success(self, knowledge_id: uuid.UUID) -> bool:
        """
        Turn one counted success into a failure after negative feedback.

        The success counter never drops below zero.
        """
        values = {
            "success_count": case(
                (KnowledgeEntry.success_count > 0, KnowledgeEntry.success_count - 1),
                else_=0
            ),
            "failure_count": KnowledgeEntry.failure_count + 1,
        }
        return self._execute_counter_update(knowledge_id, values, "revoke_success")

    def _execute_counter_update(self, knowledge_id: uuid.UUID, values: dict, operation: str) -> bool:
        try:
            self.db.execute(
                update(KnowledgeEntry)
                .where(KnowledgeEntry.id == knowledge_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("Knowledge %s failed for %s: %s", operation, knowledge_id, e)
            return False

        entry = self.db.get(KnowledgeEntry, knowledge_id)
        if entry is not None:
            self.db.refresh(entry)
        return True

    def deactivate(self, knowledge_id: uuid.UUID, commit: bool = True) -> KnowledgeEntry:
        entry = self.get(knowledge_id)
        entry.is_active = False
        entry.last_updated = datetime.utcnow()
        if commit:
            self.db.commit()
        return entry
