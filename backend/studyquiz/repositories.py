"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
sessions, courses, study sets, questions, attempts, uploads).
Repositories return SQLModel objects. Simple create/save helpers commit
immediately; methods that take part in a larger unit of work (gamification
updates, question replacement, cascades) leave the commit to the caller.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, or_, update, delete
from sqlmodel import Session, select

from . import models
from .models import StudySetStatus

# bulk deletes also evict matching rows from the identity map, expired ones included
_SYNC_FETCH = {"synchronize_session": "fetch"}


class UserRepository:
    """CRUD operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Persist a new user and return the managed instance."""
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def save(self, user: models.User) -> models.User:
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)

    def get_by_email(self, email: str) -> Optional[models.User]:
        """Return a `User` by (normalized) email or `None` if not found."""
        stmt = select(models.User).where(models.User.email == email)
        return self.session.exec(stmt).first()

    def compare_and_set_progress(self, user_id: int, expected_version: int, *, xp: int, level: int,
                                 streak: int, last_answer_at: datetime) -> bool:
        """Write gamification fields only if the row still has `expected_version`.

        Returns False when another writer got there first. Does not commit.
        """
        stmt = (
            update(models.User)
            .where(models.User.id == user_id, models.User.version == expected_version)
            .values(xp=xp, level=level, streak=streak, last_answer_at=last_answer_at,
                    version=expected_version + 1)
        )
        result = self.session.connection().execute(stmt)
        return result.rowcount == 1


class SessionTokenRepository:
    """Persisted login sessions."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, token: models.SessionToken) -> models.SessionToken:
        self.session.add(token)
        self.session.commit()
        self.session.refresh(token)
        return token

    def get_by_token(self, token: str) -> Optional[models.SessionToken]:
        stmt = select(models.SessionToken).where(models.SessionToken.token == token)
        return self.session.exec(stmt).first()

    def delete_by_token(self, token: str) -> None:
        self.session.execute(delete(models.SessionToken).where(models.SessionToken.token == token))
        self.session.commit()


class CourseRepository:
    """CRUD operations for `Course` objects, including the cascading delete."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, course: models.Course) -> models.Course:
        self.session.add(course)
        self.session.commit()
        self.session.refresh(course)
        return course

    def save(self, course: models.Course) -> models.Course:
        return self.create(course)

    def get(self, course_id: int) -> Optional[models.Course]:
        return self.session.get(models.Course, course_id)

    def list_for_user(self, user_id: int, offset: int = 0, limit: Optional[int] = None) -> List[models.Course]:
        """Return the user's courses in creation order."""
        stmt = select(models.Course).where(models.Course.user_id == user_id).order_by(models.Course.id).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return self.session.exec(stmt).all()

    def delete_cascade(self, course: models.Course) -> None:
        """Delete a course together with its study sets and their questions."""
        set_ids = self.session.exec(select(models.StudySet.id).where(models.StudySet.course_id == course.id)).all()
        if set_ids:
            self.session.execute(
                delete(models.Question).where(models.Question.study_set_id.in_(set_ids)), execution_options=_SYNC_FETCH
            )
            self.session.execute(delete(models.StudySet).where(models.StudySet.id.in_(set_ids)), execution_options=_SYNC_FETCH)
        self.session.delete(course)
        self.session.commit()


class StudySetRepository:
    """Study set persistence and the generation claim."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, study_set: models.StudySet) -> models.StudySet:
        self.session.add(study_set)
        self.session.commit()
        self.session.refresh(study_set)
        return study_set

    def save(self, study_set: models.StudySet) -> models.StudySet:
        return self.create(study_set)

    def get(self, set_id: int) -> Optional[models.StudySet]:
        return self.session.get(models.StudySet, set_id)

    def list_for_course(self, user_id: int, course_id: int, offset: int = 0,
                        limit: Optional[int] = None) -> List[models.StudySet]:
        stmt = (
            select(models.StudySet)
            .where(models.StudySet.user_id == user_id, models.StudySet.course_id == course_id)
            .order_by(models.StudySet.id)
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return self.session.exec(stmt).all()

    def claim_for_generation(self, set_id: int, now: datetime, stale_before: datetime) -> bool:
        """Atomically move a set into IN_PROGRESS.

        Succeeds from any other status, or from an IN_PROGRESS claim taken
        before `stale_before` (a crashed run). Returns False if another
        generation currently holds the set. Commits on success.
        """
        stmt = (
            update(models.StudySet)
            .where(
                models.StudySet.id == set_id,
                or_(
                    models.StudySet.status != StudySetStatus.IN_PROGRESS,
                    models.StudySet.generation_started_at.is_(None),
                    models.StudySet.generation_started_at < stale_before,
                ),
            )
            .values(status=StudySetStatus.IN_PROGRESS, generation_started_at=now)
        )
        result = self.session.connection().execute(stmt)
        self.session.commit()
        return result.rowcount == 1

    def delete_cascade(self, study_set: models.StudySet) -> None:
        self.session.execute(
            delete(models.Question).where(models.Question.study_set_id == study_set.id), execution_options=_SYNC_FETCH
        )
        self.session.delete(study_set)
        self.session.commit()


class QuestionRepository:
    """Question queries and bulk replacement."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, question_id: int) -> Optional[models.Question]:
        return self.session.get(models.Question, question_id)

    def list_for_set(self, set_id: int) -> List[models.Question]:
        stmt = select(models.Question).where(models.Question.study_set_id == set_id).order_by(models.Question.id)
        return self.session.exec(stmt).all()

    def delete_for_set(self, set_id: int) -> None:
        """Remove every question of a set. Does not commit."""
        self.session.execute(
            delete(models.Question).where(models.Question.study_set_id == set_id), execution_options=_SYNC_FETCH
        )

    def add_all(self, questions: List[models.Question]) -> None:
        """Stage a batch of new questions. Does not commit."""
        self.session.add_all(questions)


class AnswerAttemptRepository:
    """Append-only attempt log."""
    def __init__(self, session: Session):
        self.session = session

    def add(self, attempt: models.AnswerAttempt) -> None:
        """Stage an attempt. Does not commit."""
        self.session.add(attempt)

    def count_correct(self, user_id: int) -> int:
        stmt = select(func.count()).select_from(models.AnswerAttempt).where(
            models.AnswerAttempt.user_id == user_id, models.AnswerAttempt.correct == True  # noqa: E712
        )
        return self.session.exec(stmt).one()


class UploadRepository:
    """Metadata rows for uploaded files."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, upload: models.UploadDoc) -> models.UploadDoc:
        self.session.add(upload)
        self.session.commit()
        self.session.refresh(upload)
        return upload

    def get(self, upload_id: int) -> Optional[models.UploadDoc]:
        return self.session.get(models.UploadDoc, upload_id)

    def list_for_user(self, user_id: int) -> List[models.UploadDoc]:
        stmt = select(models.UploadDoc).where(models.UploadDoc.user_id == user_id).order_by(models.UploadDoc.id)
        return self.session.exec(stmt).all()

    def delete(self, upload: models.UploadDoc) -> None:
        self.session.delete(upload)
        self.session.commit()
