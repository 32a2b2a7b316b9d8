"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories,
the blob store, the question generator and the gamification rules.
Services validate input, enforce the ownership chain
(user -> course -> study set -> question) and raise the domain errors
from `errors.py`; they never build HTTP responses themselves.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

import jwt
from passlib.context import CryptContext
from sqlmodel import Session

from . import gamification, models, repositories
from .config import settings
from .errors import AppError, BadRequest, Conflict, Forbidden, InternalError, InvalidResult, NotFound, Unauthorized
from .generators import QuestionGenerator, validate_candidates
from .models import StudySetStatus, as_utc, utcnow
from .utils.pdf_text import extract_text
from .utils.storage import BlobStore

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
MAX_PAGE_SIZE = 100
PDF_CONTENT_TYPE = "application/pdf"

log = logging.getLogger("studyquiz.services")


def _normalize_email(email: Optional[str]) -> str:
    return (email or '').strip().lower()


def _page_bounds(page: Optional[int], size: int) -> Tuple[int, Optional[int]]:
    """Translate optional `page`/`size` query values into offset/limit."""
    if page is None:
        return 0, None
    if page < 0 or size < 1:
        raise BadRequest("page must be >= 0 and size >= 1")
    size = min(size, MAX_PAGE_SIZE)
    return page * size, size


class AuthService:
    """Registration, login and session token handling."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.token_repo = repositories.SessionTokenRepository(session)

    def register(self, name: str, email: str, password: str) -> Tuple[models.User, str]:
        """Create a user with a hashed password and log them in.

        Returns the persisted `User` and a fresh session token.
        """
        name = (name or '').strip()
        email = _normalize_email(email)
        if not name:
            raise BadRequest("name required")
        if '@' not in email:
            raise BadRequest("valid email required")
        if not password:
            raise BadRequest("password required")
        if self.user_repo.get_by_email(email):
            raise Conflict("email already registered")
        user = models.User(name=name, email=email, password_hash=PWD_CTX.hash(password), xp=0, level=1, streak=0)
        user = self.user_repo.create(user)
        log.info("registered user %s", user.id)
        return user, self.issue_token(user)

    def login(self, email: str, password: str) -> Tuple[models.User, str]:
        """Verify credentials and return the user with a new session token."""
        user = self.user_repo.get_by_email(_normalize_email(email))
        if not user or not user.password_hash or not PWD_CTX.verify(password or '', user.password_hash):
            raise Unauthorized("invalid credentials")
        return user, self.issue_token(user)

    def issue_token(self, user: models.User) -> str:
        """Sign a JWT for `user` and persist it as a session.

        The `sid` claim keeps tokens unique even when two are issued in the
        same second; the session row is what logout deletes.
        """
        now = utcnow()
        expires = now + timedelta(days=settings.SESSION_TTL_DAYS)
        payload = {
            "sub": str(user.id),
            "sid": secrets.token_hex(16),
            "iat": int(now.timestamp()),
            "exp": int(expires.timestamp()),
        }
        token = jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
        self.token_repo.create(models.SessionToken(token=token, user_id=user.id, created_at=now, expires_at=expires))
        return token

    def logout(self, token: Optional[str]) -> None:
        if token:
            self.token_repo.delete_by_token(token)


class UserService:
    """Profile reads and updates."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    def get(self, user_id: int) -> models.User:
        user = self.user_repo.get(user_id)
        if not user:
            raise NotFound("user not found")
        return user

    def update_profile(self, user_id: int, name: Optional[str] = None, email: Optional[str] = None) -> models.User:
        """Apply a partial update of name and/or email."""
        user = self.get(user_id)
        if name is not None:
            if not name.strip():
                raise BadRequest("name must not be blank")
            user.name = name.strip()
        if email is not None:
            email = _normalize_email(email)
            if '@' not in email:
                raise BadRequest("valid email required")
            other = self.user_repo.get_by_email(email)
            if other and other.id != user.id:
                raise Conflict("email already registered")
            user.email = email
        return self.user_repo.save(user)


class CourseService:
    """Course CRUD with cascading delete."""
    def __init__(self, session: Session):
        self.session = session
        self.course_repo = repositories.CourseRepository(session)

    def get(self, user_id: int, course_id: int) -> models.Course:
        course = self.course_repo.get(course_id)
        # foreign courses look missing
        if not course or course.user_id != user_id:
            raise NotFound("course not found")
        return course

    def list(self, user_id: int, page: Optional[int] = None, size: int = 20) -> List[models.Course]:
        offset, limit = _page_bounds(page, size)
        return self.course_repo.list_for_user(user_id, offset, limit)

    def create(self, user_id: int, title: Optional[str], description: Optional[str] = None) -> models.Course:
        if not title or not title.strip():
            raise BadRequest("title required")
        course = models.Course(user_id=user_id, title=title.strip(), description=description)
        return self.course_repo.create(course)

    def update(self, user_id: int, course_id: int, title: Optional[str] = None,
               description: Optional[str] = None) -> models.Course:
        """Partial update: only the fields that are provided change."""
        course = self.get(user_id, course_id)
        if title is not None:
            if not title.strip():
                raise BadRequest("title must not be blank")
            course.title = title.strip()
        if description is not None:
            course.description = description
        return self.course_repo.save(course)

    def delete(self, user_id: int, course_id: int) -> None:
        course = self.get(user_id, course_id)
        self.course_repo.delete_cascade(course)
        log.info("deleted course %s of user %s with its study sets", course_id, user_id)


class UploadService:
    """Store uploaded PDFs in the blob store and track their metadata."""
    def __init__(self, session: Session, store: BlobStore):
        self.session = session
        self.store = store
        self.upload_repo = repositories.UploadRepository(session)

    @staticmethod
    def _validate(filename: Optional[str], content_type: Optional[str], data: bytes) -> None:
        if not filename or len(filename) > 200 or "/" in filename or "\\" in filename:
            raise BadRequest("invalid filename")
        if not data:
            raise BadRequest("please upload a non-empty PDF file")
        mime = (content_type or '').split(';')[0].strip().lower()
        if mime != PDF_CONTENT_TYPE:
            raise BadRequest("please upload a PDF file")
        if len(data) > settings.MAX_UPLOAD_BYTES:
            raise BadRequest("file too large")

    def store_upload(self, user_id: int, filename: Optional[str], content_type: Optional[str],
                     data: bytes) -> models.UploadDoc:
        """Validate and persist an upload; nothing is written if validation fails."""
        self._validate(filename, content_type, data)
        storage_id = self.store.put(data)
        doc = models.UploadDoc(
            user_id=user_id,
            filename=filename,
            content_type=PDF_CONTENT_TYPE,
            size=len(data),
            storage_id=storage_id,
        )
        try:
            return self.upload_repo.create(doc)
        except Exception:
            self.session.rollback()
            self.store.delete(storage_id)
            raise

    def get(self, user_id: int, upload_id: int) -> models.UploadDoc:
        upload = self.upload_repo.get(upload_id)
        if not upload:
            raise NotFound("upload not found")
        if upload.user_id != user_id:
            raise Forbidden("upload does not belong to user")
        return upload

    def list(self, user_id: int) -> List[models.UploadDoc]:
        return self.upload_repo.list_for_user(user_id)

    def delete(self, user_id: int, upload_id: int) -> None:
        upload = self.get(user_id, upload_id)
        self.upload_repo.delete(upload)
        self.store.delete(upload.storage_id)


def _check_set_chain(session: Session, user_id: int, study_set: models.StudySet) -> None:
    """Raise Forbidden unless both the set and its course belong to `user_id`."""
    if study_set.user_id != user_id:
        raise Forbidden("study set does not belong to user")
    course = repositories.CourseRepository(session).get(study_set.course_id)
    if not course or course.user_id != user_id:
        raise Forbidden("study set does not belong to user")


@dataclass
class AttemptResult:
    correct: bool
    xp_awarded: int
    new_user_xp: int
    new_user_level: int
    streak: int
    attempt: models.AnswerAttempt


class GamificationService:
    """Score answer attempts and maintain XP, level and streak.

    The user row is updated with an optimistic version check so two
    simultaneous attempts by the same user cannot overwrite each other; a
    lost race re-reads the user and recomputes, up to `max_retries` times.
    """
    def __init__(self, session: Session, clock: Callable[[], datetime] = utcnow, max_retries: int = 5):
        self.session = session
        self.clock = clock
        self.max_retries = max_retries
        self.user_repo = repositories.UserRepository(session)
        self.question_repo = repositories.QuestionRepository(session)
        self.set_repo = repositories.StudySetRepository(session)
        self.attempt_repo = repositories.AnswerAttemptRepository(session)

    def record_attempt(self, user_id: int, question_id: int, chosen_index: int) -> AttemptResult:
        if chosen_index is None or not 0 <= chosen_index <= 3:
            raise BadRequest("chosenIndex must be 0..3")
        user = self.user_repo.get(user_id)
        if not user:
            raise NotFound("user not found")
        question = self.question_repo.get(question_id)
        if not question:
            raise NotFound("question not found")
        study_set = self.set_repo.get(question.study_set_id)
        if not study_set:
            raise NotFound("question not found")
        _check_set_chain(self.session, user_id, study_set)

        correct = chosen_index == question.correct_index
        for _ in range(self.max_retries):
            now = self.clock()
            version = user.version
            previous_level = user.level
            streak = gamification.next_streak(user.streak, as_utc(user.last_answer_at), now)
            awarded = gamification.xp_for_attempt(correct, streak)
            xp, level = gamification.apply_xp(user.xp, user.level, awarded)
            updated = self.user_repo.compare_and_set_progress(
                user_id, version, xp=xp, level=level, streak=streak, last_answer_at=now
            )
            if updated:
                attempt = models.AnswerAttempt(
                    user_id=user_id,
                    question_id=question_id,
                    chosen_index=chosen_index,
                    correct=correct,
                    scored_xp=awarded,
                    created_at=now,
                )
                self.attempt_repo.add(attempt)
                self.session.commit()
                self.session.refresh(attempt)
                if level > previous_level:
                    log.info("user %s reached level %s", user_id, level)
                return AttemptResult(correct, awarded, xp, level, streak, attempt)
            # rollback expires `user`; the next read sees the winner's write
            self.session.rollback()
            log.warning("concurrent progress update for user %s, retrying", user_id)
        raise Conflict("too many concurrent updates, please retry")

    def stats(self, user_id: int) -> dict:
        user = self.user_repo.get(user_id)
        if not user:
            raise NotFound("user not found")
        return {
            'xp': user.xp,
            'level': user.level,
            'streak': user.streak,
            'correct_answers': self.attempt_repo.count_correct(user_id),
        }


class StudySetService:
    """Study set CRUD and the question generation lifecycle.

    Status transitions: PENDING -> IN_PROGRESS -> READY | FAILED, and
    READY/FAILED -> IN_PROGRESS again when generation is re-run. Entering
    IN_PROGRESS is a conditional update, so at most one generation runs per
    set; a claim older than `stale_seconds` is treated as abandoned.

    `store` and `generator` are only needed by `generate_questions`.
    """
    def __init__(self, session: Session, store: Optional[BlobStore] = None,
                 generator: Optional[QuestionGenerator] = None,
                 clock: Callable[[], datetime] = utcnow, stale_seconds: Optional[int] = None):
        self.session = session
        self.store = store
        self.generator = generator
        self.clock = clock
        self.stale_seconds = settings.GENERATION_STALE_SECONDS if stale_seconds is None else stale_seconds
        self.set_repo = repositories.StudySetRepository(session)
        self.course_repo = repositories.CourseRepository(session)
        self.upload_repo = repositories.UploadRepository(session)
        self.question_repo = repositories.QuestionRepository(session)

    def _owned_course(self, user_id: int, course_id: int) -> models.Course:
        course = self.course_repo.get(course_id)
        if not course:
            raise NotFound("course not found")
        if course.user_id != user_id:
            raise Forbidden("course does not belong to user")
        return course

    def create(self, user_id: int, course_id: int, title: Optional[str],
               upload_id: Optional[int] = None) -> models.StudySet:
        self._owned_course(user_id, course_id)
        if not title or not title.strip():
            raise BadRequest("title required")
        if upload_id is not None:
            upload = self.upload_repo.get(upload_id)
            if not upload:
                raise BadRequest("upload not found")
            if upload.user_id != user_id:
                raise Forbidden("upload does not belong to user")
        study_set = models.StudySet(
            user_id=user_id,
            course_id=course_id,
            title=title.strip(),
            upload_id=upload_id,
            status=StudySetStatus.PENDING,
        )
        return self.set_repo.create(study_set)

    def get(self, user_id: int, set_id: int) -> models.StudySet:
        study_set = self.set_repo.get(set_id)
        if not study_set:
            raise NotFound("study set not found")
        _check_set_chain(self.session, user_id, study_set)
        return study_set

    def get_in_course(self, user_id: int, course_id: int, set_id: int) -> models.StudySet:
        study_set = self.get(user_id, set_id)
        if study_set.course_id != course_id:
            raise NotFound("study set not found")
        return study_set

    def list(self, user_id: int, course_id: int, page: Optional[int] = None, size: int = 20) -> List[models.StudySet]:
        self._owned_course(user_id, course_id)
        offset, limit = _page_bounds(page, size)
        return self.set_repo.list_for_course(user_id, course_id, offset, limit)

    def delete(self, user_id: int, course_id: int, set_id: int) -> None:
        study_set = self.get_in_course(user_id, course_id, set_id)
        self.set_repo.delete_cascade(study_set)

    def list_questions(self, user_id: int, set_id: int) -> List[models.Question]:
        self.get(user_id, set_id)
        return self.question_repo.list_for_set(set_id)

    def generate_questions(self, user_id: int, set_id: int, count: Optional[int] = None) -> int:
        """Run the PDF -> text -> generator -> questions pipeline for one set.

        Returns the number of questions created. Any failure after the set
        was claimed marks it FAILED and is re-raised as `InternalError`
        carrying the original message. Regeneration replaces the previous
        questions, and a failed run leaves the set without any.
        """
        study_set = self.get(user_id, set_id)
        if study_set.upload_id is None:
            raise BadRequest("study set has no upload")
        upload = self.upload_repo.get(study_set.upload_id)
        if not upload:
            raise BadRequest("upload not found")
        if upload.user_id != user_id:
            raise Forbidden("upload does not belong to user")

        now = self.clock()
        if not self.set_repo.claim_for_generation(set_id, now, now - timedelta(seconds=self.stale_seconds)):
            raise Conflict("generation already in progress for this study set")
        log.info("generation started set=%s upload=%s", set_id, upload.id)

        try:
            with self.store.open(upload.storage_id) as fh:
                text = extract_text(fh)
            candidates = validate_candidates(self.generator.generate(text, count))
            if not candidates:
                raise InvalidResult("generator returned no valid questions")
            self.question_repo.delete_for_set(set_id)
            self.question_repo.add_all([
                models.Question(study_set_id=set_id, **c.model_dump()) for c in candidates
            ])
            study_set.status = StudySetStatus.READY
            study_set.last_error = None
            study_set.generation_started_at = None
            self.session.add(study_set)
            self.session.commit()
        except Exception as e:
            self.session.rollback()
            message = e.message if isinstance(e, AppError) else str(e)
            log.error("generation failed set=%s: %s", set_id, message, exc_info=True)
            self.question_repo.delete_for_set(set_id)
            study_set.status = StudySetStatus.FAILED
            study_set.last_error = message[:1000]
            study_set.generation_started_at = None
            self.session.add(study_set)
            self.session.commit()
            raise InternalError(f"generation failed: {message}") from e

        log.info("generation finished set=%s questions=%s", set_id, len(candidates))
        return len(candidates)
