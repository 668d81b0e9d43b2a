"""
Database abstraction for Postgres and an in-memory test implementation.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

PROGRESS_STATUSES = ("not_started", "in_progress", "completed")
_STATUS_RANK = {status: rank for rank, status in enumerate(PROGRESS_STATUSES)}

USER_EDITABLE_FIELDS = ("display_name", "email", "avatar_url")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back without their offset; they are stored as UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class UserRecord:
    id: str
    privy_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class LessonRecord:
    id: str
    title: str
    description: str = ""
    position: int = 0
    is_published: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class ProgressRecord:
    id: str
    user_id: str
    lesson_id: str
    status: str = "not_started"
    progress_percent: float = 0.0
    score: Optional[float] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class SubscriptionRecord:
    id: str
    user_id: str
    status: str
    stripe_customer_id: Optional[str] = None
    price_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    updated_at: datetime = field(default_factory=_utcnow)


def merge_progress(
    current: Optional[ProgressRecord],
    *,
    user_id: str,
    lesson_id: str,
    status: str,
    progress_percent: Optional[float] = None,
    score: Optional[float] = None,
    now: Optional[datetime] = None,
) -> ProgressRecord:
    """
    Fold a progress update into the stored row.

    Status only moves forward (not_started -> in_progress -> completed),
    progress_percent never decreases and the best score is kept. Completing
    a lesson pins progress to 100 and stamps completed_at once.
    """
    if status not in _STATUS_RANK:
        raise ValueError(f"Unknown progress status: {status}")
    now = now or _utcnow()
    base = current or ProgressRecord(id=_new_id(), user_id=user_id, lesson_id=lesson_id)

    if _STATUS_RANK[status] > _STATUS_RANK[base.status]:
        new_status = status
    else:
        new_status = base.status

    percent = base.progress_percent
    if progress_percent is not None:
        percent = max(percent, min(100.0, max(0.0, progress_percent)))
    if percent >= 100.0:
        new_status = "completed"
    elif percent > 0 and new_status == "not_started":
        new_status = "in_progress"

    completed_at = base.completed_at
    if new_status == "completed":
        percent = 100.0
        completed_at = completed_at or now

    best_score = base.score
    if score is not None:
        best_score = score if best_score is None else max(best_score, score)

    return replace(
        base,
        status=new_status,
        progress_percent=percent,
        score=best_score,
        completed_at=completed_at,
        updated_at=now,
    )


class DbClient(Protocol):
    """Interface for database access."""

    def upsert_user(
        self,
        privy_id: str,
        *,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> UserRecord:
        ...

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        ...

    def get_user_by_privy_id(self, privy_id: str) -> Optional[UserRecord]:
        ...

    def get_user_by_stripe_customer(self, customer_id: str) -> Optional[UserRecord]:
        ...

    def update_user(self, user_id: str, **changes) -> Optional[UserRecord]:
        ...

    def set_stripe_customer(self, user_id: str, customer_id: str) -> None:
        ...

    def upsert_lesson(self, lesson: LessonRecord) -> LessonRecord:
        ...

    def get_lesson(self, lesson_id: str) -> Optional[LessonRecord]:
        ...

    def list_lessons(self, published_only: bool = True) -> list[LessonRecord]:
        ...

    def list_progress(
        self, user_id: str, lesson_id: Optional[str] = None
    ) -> list[ProgressRecord]:
        ...

    def record_progress(
        self,
        user_id: str,
        lesson_id: str,
        *,
        status: str,
        progress_percent: Optional[float] = None,
        score: Optional[float] = None,
    ) -> ProgressRecord:
        ...

    def get_subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        ...

    def get_latest_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        ...

    def upsert_subscription(self, subscription: SubscriptionRecord) -> None:
        ...

    def has_processed_event(self, event_id: str) -> bool:
        ...

    def mark_event_processed(self, event_id: str, event_type: str) -> bool:
        ...


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self.users: Dict[str, UserRecord] = {}
        self.lessons: Dict[str, LessonRecord] = {}
        self.progress: Dict[tuple[str, str], ProgressRecord] = {}
        self.subscriptions: Dict[str, SubscriptionRecord] = {}
        self.events: Dict[str, str] = {}

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.users.clear()
        self.lessons.clear()
        self.progress.clear()
        self.subscriptions.clear()
        self.events.clear()

    def upsert_user(
        self,
        privy_id: str,
        *,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> UserRecord:
        user = self.get_user_by_privy_id(privy_id)
        if user is None:
            user = UserRecord(
                id=_new_id(),
                privy_id=privy_id,
                email=email,
                display_name=display_name,
            )
            self.users[user.id] = user
            return user
        if email and not user.email:
            user.email = email
            user.updated_at = _utcnow()
        if display_name and not user.display_name:
            user.display_name = display_name
            user.updated_at = _utcnow()
        return user

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        return self.users.get(user_id)

    def get_user_by_privy_id(self, privy_id: str) -> Optional[UserRecord]:
        for user in self.users.values():
            if user.privy_id == privy_id:
                return user
        return None

    def get_user_by_stripe_customer(self, customer_id: str) -> Optional[UserRecord]:
        for user in self.users.values():
            if user.stripe_customer_id == customer_id:
                return user
        return None

    def update_user(self, user_id: str, **changes) -> Optional[UserRecord]:
        user = self.users.get(user_id)
        if not user:
            return None
        for key, value in changes.items():
            if key in USER_EDITABLE_FIELDS:
                setattr(user, key, value)
        user.updated_at = _utcnow()
        return user

    def set_stripe_customer(self, user_id: str, customer_id: str) -> None:
        user = self.users.get(user_id)
        if user:
            user.stripe_customer_id = customer_id
            user.updated_at = _utcnow()

    def upsert_lesson(self, lesson: LessonRecord) -> LessonRecord:
        existing = self.lessons.get(lesson.id)
        if existing:
            lesson = replace(lesson, created_at=existing.created_at, updated_at=_utcnow())
        self.lessons[lesson.id] = lesson
        return lesson

    def get_lesson(self, lesson_id: str) -> Optional[LessonRecord]:
        return self.lessons.get(lesson_id)

    def list_lessons(self, published_only: bool = True) -> list[LessonRecord]:
        lessons = [
            lesson
            for lesson in self.lessons.values()
            if lesson.is_published or not published_only
        ]
        return sorted(lessons, key=lambda lesson: (lesson.position, lesson.id))

    def list_progress(
        self, user_id: str, lesson_id: Optional[str] = None
    ) -> list[ProgressRecord]:
        items = [
            record
            for (uid, lid), record in self.progress.items()
            if uid == user_id and (lesson_id is None or lid == lesson_id)
        ]
        return sorted(items, key=lambda record: record.lesson_id)

    def record_progress(
        self,
        user_id: str,
        lesson_id: str,
        *,
        status: str,
        progress_percent: Optional[float] = None,
        score: Optional[float] = None,
    ) -> ProgressRecord:
        record = merge_progress(
            self.progress.get((user_id, lesson_id)),
            user_id=user_id,
            lesson_id=lesson_id,
            status=status,
            progress_percent=progress_percent,
            score=score,
        )
        self.progress[(user_id, lesson_id)] = record
        return record

    def get_subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        return self.subscriptions.get(subscription_id)

    def get_latest_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        items = [s for s in self.subscriptions.values() if s.user_id == user_id]
        if not items:
            return None
        return max(items, key=lambda s: s.updated_at)

    def upsert_subscription(self, subscription: SubscriptionRecord) -> None:
        self.subscriptions[subscription.id] = replace(subscription, updated_at=_utcnow())

    def has_processed_event(self, event_id: str) -> bool:
        return event_id in self.events

    def mark_event_processed(self, event_id: str, event_type: str) -> bool:
        if event_id in self.events:
            return False
        self.events[event_id] = event_type
        return True


class PostgresDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).

    The schema is owned by the SQL migrations in ``learnhub/migrations``;
    ``create_schema`` builds it from the ORM rows instead, for throwaway
    databases.
    """

    def __init__(self, database_url: str, *, create_schema: bool = False):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresDbClient")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        if create_schema:
            Base.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    def _to_user(self, row: "UserRow") -> UserRecord:
        return UserRecord(
            id=row.id,
            privy_id=row.privy_id,
            email=row.email,
            display_name=row.display_name,
            avatar_url=row.avatar_url,
            stripe_customer_id=row.stripe_customer_id,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    def _to_lesson(self, row: "LessonRow") -> LessonRecord:
        return LessonRecord(
            id=row.id,
            title=row.title,
            description=row.description,
            position=row.position,
            is_published=row.is_published,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    def _to_progress(self, row: "ProgressRow") -> ProgressRecord:
        return ProgressRecord(
            id=row.id,
            user_id=row.user_id,
            lesson_id=row.lesson_id,
            status=row.status,
            progress_percent=row.progress_percent,
            score=row.score,
            completed_at=_aware(row.completed_at),
            updated_at=_aware(row.updated_at),
        )

    def _to_subscription(self, row: "SubscriptionRow") -> SubscriptionRecord:
        return SubscriptionRecord(
            id=row.id,
            user_id=row.user_id,
            status=row.status,
            stripe_customer_id=row.stripe_customer_id,
            price_id=row.price_id,
            current_period_end=_aware(row.current_period_end),
            updated_at=_aware(row.updated_at),
        )

    def upsert_user(
        self,
        privy_id: str,
        *,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> UserRecord:
        now = _utcnow()
        with self.Session() as session:
            row = session.execute(
                select(UserRow).where(UserRow.privy_id == privy_id)
            ).scalar_one_or_none()
            if row is None:
                row = UserRow(
                    id=_new_id(),
                    privy_id=privy_id,
                    email=email,
                    display_name=display_name,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                try:
                    session.commit()
                except IntegrityError:
                    # A concurrent login created the row first.
                    session.rollback()
                    row = session.execute(
                        select(UserRow).where(UserRow.privy_id == privy_id)
                    ).scalar_one()
                return self._to_user(row)
            changed = False
            if email and not row.email:
                row.email = email
                changed = True
            if display_name and not row.display_name:
                row.display_name = display_name
                changed = True
            if changed:
                row.updated_at = now
                session.commit()
            return self._to_user(row)

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            return self._to_user(row) if row else None

    def get_user_by_privy_id(self, privy_id: str) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.execute(
                select(UserRow).where(UserRow.privy_id == privy_id)
            ).scalar_one_or_none()
            return self._to_user(row) if row else None

    def get_user_by_stripe_customer(self, customer_id: str) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.execute(
                select(UserRow).where(UserRow.stripe_customer_id == customer_id)
            ).scalar_one_or_none()
            return self._to_user(row) if row else None

    def update_user(self, user_id: str, **changes) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            if not row:
                return None
            for key, value in changes.items():
                if key in USER_EDITABLE_FIELDS:
                    setattr(row, key, value)
            row.updated_at = _utcnow()
            session.commit()
            return self._to_user(row)

    def set_stripe_customer(self, user_id: str, customer_id: str) -> None:
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            if not row or row.stripe_customer_id == customer_id:
                return
            row.stripe_customer_id = customer_id
            row.updated_at = _utcnow()
            session.commit()

    def upsert_lesson(self, lesson: LessonRecord) -> LessonRecord:
        now = _utcnow()
        with self.Session() as session:
            row = session.get(LessonRow, lesson.id)
            if row:
                row.title = lesson.title
                row.description = lesson.description
                row.position = lesson.position
                row.is_published = lesson.is_published
                row.updated_at = now
            else:
                row = LessonRow(
                    id=lesson.id,
                    title=lesson.title,
                    description=lesson.description,
                    position=lesson.position,
                    is_published=lesson.is_published,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
            session.commit()
            return self._to_lesson(row)

    def get_lesson(self, lesson_id: str) -> Optional[LessonRecord]:
        with self.Session() as session:
            row = session.get(LessonRow, lesson_id)
            return self._to_lesson(row) if row else None

    def list_lessons(self, published_only: bool = True) -> list[LessonRecord]:
        with self.Session() as session:
            stmt = select(LessonRow).order_by(LessonRow.position.asc(), LessonRow.id.asc())
            if published_only:
                stmt = stmt.where(LessonRow.is_published.is_(True))
            return [self._to_lesson(row) for row in session.execute(stmt).scalars()]

    def list_progress(
        self, user_id: str, lesson_id: Optional[str] = None
    ) -> list[ProgressRecord]:
        with self.Session() as session:
            stmt = (
                select(ProgressRow)
                .where(ProgressRow.user_id == user_id)
                .order_by(ProgressRow.lesson_id.asc())
            )
            if lesson_id is not None:
                stmt = stmt.where(ProgressRow.lesson_id == lesson_id)
            return [self._to_progress(row) for row in session.execute(stmt).scalars()]

    def record_progress(
        self,
        user_id: str,
        lesson_id: str,
        *,
        status: str,
        progress_percent: Optional[float] = None,
        score: Optional[float] = None,
    ) -> ProgressRecord:
        # One retry covers two first-time writers racing on the unique key.
        for attempt in range(2):
            with self.Session() as session:
                row = session.execute(
                    select(ProgressRow)
                    .where(
                        ProgressRow.user_id == user_id,
                        ProgressRow.lesson_id == lesson_id,
                    )
                    .with_for_update()
                ).scalar_one_or_none()
                merged = merge_progress(
                    self._to_progress(row) if row else None,
                    user_id=user_id,
                    lesson_id=lesson_id,
                    status=status,
                    progress_percent=progress_percent,
                    score=score,
                )
                if row is None:
                    row = ProgressRow(id=merged.id, user_id=user_id, lesson_id=lesson_id)
                    session.add(row)
                row.status = merged.status
                row.progress_percent = merged.progress_percent
                row.score = merged.score
                row.completed_at = merged.completed_at
                row.updated_at = merged.updated_at
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    if attempt:
                        raise
                    continue
                return merged
        raise RuntimeError("unreachable")

    def get_subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        with self.Session() as session:
            row = session.get(SubscriptionRow, subscription_id)
            return self._to_subscription(row) if row else None

    def get_latest_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        with self.Session() as session:
            row = session.execute(
                select(SubscriptionRow)
                .where(SubscriptionRow.user_id == user_id)
                .order_by(SubscriptionRow.updated_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return self._to_subscription(row) if row else None

    def upsert_subscription(self, subscription: SubscriptionRecord) -> None:
        with self.Session() as session:
            row = session.get(SubscriptionRow, subscription.id)
            if row is None:
                row = SubscriptionRow(id=subscription.id)
                session.add(row)
            row.user_id = subscription.user_id
            row.status = subscription.status
            row.stripe_customer_id = subscription.stripe_customer_id
            row.price_id = subscription.price_id
            row.current_period_end = subscription.current_period_end
            row.updated_at = _utcnow()
            session.commit()

    def has_processed_event(self, event_id: str) -> bool:
        with self.Session() as session:
            return session.get(StripeEventRow, event_id) is not None

    def mark_event_processed(self, event_id: str, event_type: str) -> bool:
        with self.Session() as session:
            session.add(
                StripeEventRow(id=event_id, type=event_type, processed_at=_utcnow())
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    privy_id = Column(String(255), nullable=False, unique=True)
    email = Column(String(320), nullable=True)
    display_name = Column(String(100), nullable=True)
    avatar_url = Column(Text, nullable=True)
    stripe_customer_id = Column(String(255), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class LessonRow(Base):
    __tablename__ = "lessons"

    id = Column(String(128), primary_key=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, default="")
    position = Column(Integer, nullable=False, default=0, index=True)
    is_published = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ProgressRow(Base):
    __tablename__ = "user_progress"
    __table_args__ = (
        UniqueConstraint("user_id", "lesson_id", name="user_progress_user_lesson_unique"),
    )

    id = Column(String(64), primary_key=True)
    user_id = Column(
        String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    lesson_id = Column(
        String(128), ForeignKey("lessons.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status = Column(String(20), nullable=False, default="not_started")
    progress_percent = Column(Float, nullable=False, default=0.0)
    score = Column(Float, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class SubscriptionRow(Base):
    __tablename__ = "subscriptions"

    id = Column(String(255), primary_key=True)
    user_id = Column(
        String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    stripe_customer_id = Column(String(255), nullable=True)
    status = Column(String(32), nullable=False)
    price_id = Column(String(255), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class StripeEventRow(Base):
    __tablename__ = "stripe_events"

    id = Column(String(255), primary_key=True)
    type = Column(String(100), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
