"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Ownership runs User -> Course -> StudySet -> Question; attempts, uploads
and session tokens hang directly off the user.
"""

import enum
from typing import List, Optional
from datetime import datetime, timezone

from sqlalchemy import Column, JSON
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return `value` as an aware UTC datetime.

    SQLite hands back naive datetimes even when aware ones were stored,
    so naive values are taken to already be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class StudySetStatus(str, enum.Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    READY = "READY"
    FAILED = "FAILED"


class User(SQLModel, table=True):
    """A registered learner and their gamification state.

    Fields:
    - `email`: unique, stored lower-cased
    - `password_hash`: hashed password string (never store plaintext)
    - `xp` / `level` / `streak` / `last_answer_at`: owned by the gamification engine
    - `version`: bumped on every gamification write (optimistic concurrency)
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    xp: int = 0
    level: int = 1
    streak: int = 0
    last_answer_at: Optional[datetime] = None
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class Course(SQLModel, table=True):
    """A course owned by a single user."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    title: str
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class StudySet(SQLModel, table=True):
    """A collection of generated questions tied to a course and an upload.

    `status` is written only by the study set lifecycle; `generation_started_at`
    marks when the current IN_PROGRESS claim was taken.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    course_id: int = Field(foreign_key='course.id', index=True)
    title: str
    upload_id: Optional[int] = None
    status: StudySetStatus = Field(default=StudySetStatus.PENDING)
    generation_started_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Question(SQLModel, table=True):
    """A multiple-choice question with exactly four choices."""
    id: Optional[int] = Field(default=None, primary_key=True)
    study_set_id: int = Field(foreign_key='studyset.id', index=True)
    stem: str
    choices: List[str] = Field(sa_column=Column(JSON, nullable=False))
    correct_index: int
    explanation: Optional[str] = None


class AnswerAttempt(SQLModel, table=True):
    """Append-only record of a single answer submission."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    # no foreign key: questions are replaced on regeneration, attempts are kept
    question_id: int = Field(index=True)
    chosen_index: int
    correct: bool = False
    scored_xp: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class SessionToken(SQLModel, table=True):
    """A login session; expiry is checked lazily when the token is used."""
    id: Optional[int] = Field(default=None, primary_key=True)
    token: str = Field(index=True, unique=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime


class UploadDoc(SQLModel, table=True):
    """Metadata for an uploaded file; the bytes live in the blob store."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    filename: str
    content_type: str
    size: int
    storage_id: str
    uploaded_at: datetime = Field(default_factory=utcnow)
