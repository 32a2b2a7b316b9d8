"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable. Field names are snake_case
in Python and camelCase on the wire (`chosenIndex`, `xpAwarded`, ...);
both spellings are accepted on input.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .models import StudySetStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class RegisterIn(CamelModel):
    """Payload for user registration."""
    name: str
    email: str
    password: str


class LoginIn(CamelModel):
    """Payload for the login endpoint."""
    email: str
    password: str


class AuthOut(CamelModel):
    """Authentication response containing a session token."""
    user_id: int
    name: str
    email: str
    token: str


class PublicUserOut(CamelModel):
    id: int
    name: str
    email: str


class UserOut(CamelModel):
    """Profile plus gamification state."""
    id: int
    name: str
    email: str
    xp: int
    level: int
    streak: int
    last_answer_at: Optional[datetime] = None


class UserUpdateIn(CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None


class AttemptIn(CamelModel):
    """A single answer submission; the range check happens in the service."""
    chosen_index: int


class AttemptOut(CamelModel):
    correct: bool
    xp_awarded: int
    new_user_xp: int
    new_user_level: int
    streak: int


class StatsOut(CamelModel):
    xp: int
    level: int
    streak: int
    correct_answers: int


class CourseIn(CamelModel):
    title: Optional[str] = None
    description: Optional[str] = None


class CourseOut(CamelModel):
    id: int
    user_id: int
    title: str
    description: Optional[str] = None
    created_at: datetime


class StudySetIn(CamelModel):
    title: Optional[str] = None
    upload_id: Optional[int] = None


class StudySetOut(CamelModel):
    id: int
    user_id: int
    course_id: int
    title: str
    upload_id: Optional[int] = None
    status: StudySetStatus
    last_error: Optional[str] = None
    created_at: datetime


class QuestionOut(CamelModel):
    id: int
    study_set_id: int
    stem: str
    choices: List[str]
    correct_index: int
    explanation: Optional[str] = None


class GenerateOut(CamelModel):
    created: int
    status: StudySetStatus


class UploadCreatedOut(CamelModel):
    upload_id: int


class UploadOut(CamelModel):
    id: int
    filename: str
    content_type: str
    size: int
    uploaded_at: datetime


class QuestionCandidate(BaseModel):
    """A generated question that passed validation, not yet persisted."""
    stem: str
    choices: List[str]
    correct_index: int
    explanation: Optional[str] = None
