"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the study quiz backend.
Controllers are intentionally thin: they accept requests, delegate to
services, and return camelCase JSON responses.

Endpoints implemented:
- POST /auth/register, POST /auth/login, POST /auth/logout, GET /auth/me
- GET|PUT /users/{userId}
- POST /users/{userId}/questions/{questionId}/attempts
- GET /users/{userId}/stats
- GET|POST /users/{userId}/courses, GET|PUT|DELETE /users/{userId}/courses/{courseId}
- GET|POST /users/{userId}/courses/{courseId}/sets
- GET|DELETE /users/{userId}/courses/{courseId}/sets/{setId}
- GET /users/{userId}/sets/{setId}
- POST /users/{userId}/sets/{setId}/generate
- GET /users/{userId}/sets/{setId}/questions
- GET|POST /users/{userId}/uploads, DELETE /users/{userId}/uploads/{uploadId}
- GET /health
"""

import json
import logging
import os
import time
import uuid
from typing import List, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session

from . import models, services
from .auth import bearer_token, get_current_user, require_path_user
from .config import settings
from .database import create_db_and_tables, get_session
from .errors import AppError
from .generators import QuestionGenerator, build_generator
from .models import StudySetStatus
from .schemas import (
    AttemptIn,
    AttemptOut,
    AuthOut,
    CourseIn,
    CourseOut,
    GenerateOut,
    LoginIn,
    PublicUserOut,
    QuestionOut,
    RegisterIn,
    StatsOut,
    StudySetIn,
    StudySetOut,
    UploadCreatedOut,
    UploadOut,
    UserOut,
    UserUpdateIn,
)
from .utils.rate_limit import InMemoryRateLimiter
from .utils.storage import BlobStore

app = FastAPI(title="Study Quiz API")
logger = logging.getLogger("studyquiz.api")
if not logger.handlers:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

_generate_rate_limiter = InMemoryRateLimiter()
_blob_store = BlobStore(settings.UPLOAD_DIR)
_generator = build_generator(settings)

# Wide-open CORS keeps local frontends working without extra config in dev;
# it also answers OPTIONS preflights before auth runs.
if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    info = {
        "request_id": req_id,
        "path": request.url.path,
        "method": request.method,
        "client": request.client.host if request.client else "unknown",
    }
    try:
        response = await call_next(request)
    except Exception:
        info["duration_ms"] = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception("request_failed %s", json.dumps(info, ensure_ascii=True))
        raise
    response.headers["X-Request-ID"] = req_id
    info["status_code"] = response.status_code
    info["duration_ms"] = round((time.perf_counter() - started) * 1000.0, 2)
    logger.info("request_done %s", json.dumps(info, ensure_ascii=True))
    return response


def get_blob_store() -> BlobStore:
    return _blob_store


def get_generator() -> QuestionGenerator:
    """The generator strategy chosen at startup from QUESTION_GENERATOR."""
    return _generator


def get_rate_limiter() -> InMemoryRateLimiter:
    return _generate_rate_limiter


def _enforce_generate_rate_limit(limiter: InMemoryRateLimiter, user_id: int) -> None:
    allowed, retry_after = limiter.allow(f"generate:{user_id}", settings.GENERATE_RATE_LIMIT_PER_MIN, 60)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail=f"rate limit exceeded; retry after {retry_after}s",
            headers={"Retry-After": str(retry_after)},
        )


# ---------------------------------------------------------------------------
# auth
# ---------------------------------------------------------------------------

@app.post('/auth/register', response_model=AuthOut, status_code=201)
def register(payload: RegisterIn, db: Session = Depends(get_session)):
    """Create an account and return a session token for it."""
    user, token = services.AuthService(db).register(payload.name, payload.email, payload.password)
    return AuthOut(user_id=user.id, name=user.name, email=user.email, token=token)


@app.post('/auth/login', response_model=AuthOut)
def login(payload: LoginIn, db: Session = Depends(get_session)):
    user, token = services.AuthService(db).login(payload.email, payload.password)
    return AuthOut(user_id=user.id, name=user.name, email=user.email, token=token)


@app.post('/auth/logout', status_code=204)
def logout(token: str = Depends(bearer_token), db: Session = Depends(get_session)):
    """Invalidate the presented token. Unknown tokens are ignored."""
    services.AuthService(db).logout(token)
    return Response(status_code=204)


@app.get('/auth/me', response_model=PublicUserOut)
def me(user: models.User = Depends(get_current_user)):
    return user


# ---------------------------------------------------------------------------
# users, attempts, stats
# ---------------------------------------------------------------------------

@app.get('/users/{user_id}', response_model=UserOut)
def get_user(user_id: int, user: models.User = Depends(require_path_user), db: Session = Depends(get_session)):
    return services.UserService(db).get(user_id)


@app.put('/users/{user_id}', response_model=UserOut)
def update_user(user_id: int, payload: UserUpdateIn, user: models.User = Depends(require_path_user),
                db: Session = Depends(get_session)):
    return services.UserService(db).update_profile(user_id, payload.name, payload.email)


@app.post('/users/{user_id}/questions/{question_id}/attempts', response_model=AttemptOut, status_code=201)
def record_attempt(user_id: int, question_id: int, payload: AttemptIn,
                   user: models.User = Depends(require_path_user), db: Session = Depends(get_session)):
    """Score one answer and update the caller's XP, level and streak."""
    result = services.GamificationService(db).record_attempt(user_id, question_id, payload.chosen_index)
    return AttemptOut.model_validate(result)


@app.get('/users/{user_id}/stats', response_model=StatsOut)
def stats(user_id: int, user: models.User = Depends(require_path_user), db: Session = Depends(get_session)):
    return services.GamificationService(db).stats(user_id)


# ---------------------------------------------------------------------------
# courses
# ---------------------------------------------------------------------------

@app.get('/users/{user_id}/courses', response_model=List[CourseOut])
def list_courses(user_id: int, page: Optional[int] = None, size: int = 20,
                 user: models.User = Depends(require_path_user), db: Session = Depends(get_session)):
    return services.CourseService(db).list(user_id, page, size)


@app.post('/users/{user_id}/courses', response_model=CourseOut, status_code=201)
def create_course(user_id: int, payload: CourseIn, user: models.User = Depends(require_path_user),
                  db: Session = Depends(get_session)):
    return services.CourseService(db).create(user_id, payload.title, payload.description)


@app.get('/users/{user_id}/courses/{course_id}', response_model=CourseOut)
def get_course(user_id: int, course_id: int, user: models.User = Depends(require_path_user),
               db: Session = Depends(get_session)):
    return services.CourseService(db).get(user_id, course_id)


@app.put('/users/{user_id}/courses/{course_id}', response_model=CourseOut)
def update_course(user_id: int, course_id: int, payload: CourseIn,
                  user: models.User = Depends(require_path_user), db: Session = Depends(get_session)):
    return services.CourseService(db).update(user_id, course_id, payload.title, payload.description)


@app.delete('/users/{user_id}/courses/{course_id}', status_code=204)
def delete_course(user_id: int, course_id: int, user: models.User = Depends(require_path_user),
                  db: Session = Depends(get_session)):
    """Delete a course together with its study sets and their questions."""
    services.CourseService(db).delete(user_id, course_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# study sets
# ---------------------------------------------------------------------------

@app.get('/users/{user_id}/courses/{course_id}/sets', response_model=List[StudySetOut])
def list_sets(user_id: int, course_id: int, page: Optional[int] = None, size: int = 20,
              user: models.User = Depends(require_path_user), db: Session = Depends(get_session)):
    return services.StudySetService(db).list(user_id, course_id, page, size)


@app.post('/users/{user_id}/courses/{course_id}/sets', response_model=StudySetOut, status_code=201)
def create_set(user_id: int, course_id: int, payload: StudySetIn,
               user: models.User = Depends(require_path_user), db: Session = Depends(get_session)):
    return services.StudySetService(db).create(user_id, course_id, payload.title, payload.upload_id)


@app.get('/users/{user_id}/courses/{course_id}/sets/{set_id}', response_model=StudySetOut)
def get_set_in_course(user_id: int, course_id: int, set_id: int,
                      user: models.User = Depends(require_path_user), db: Session = Depends(get_session)):
    return services.StudySetService(db).get_in_course(user_id, course_id, set_id)


@app.delete('/users/{user_id}/courses/{course_id}/sets/{set_id}', status_code=204)
def delete_set(user_id: int, course_id: int, set_id: int,
               user: models.User = Depends(require_path_user), db: Session = Depends(get_session)):
    services.StudySetService(db).delete(user_id, course_id, set_id)
    return Response(status_code=204)


@app.get('/users/{user_id}/sets/{set_id}', response_model=StudySetOut)
def get_set(user_id: int, set_id: int, user: models.User = Depends(require_path_user),
            db: Session = Depends(get_session)):
    return services.StudySetService(db).get(user_id, set_id)


@app.post('/users/{user_id}/sets/{set_id}/generate', response_model=GenerateOut)
def generate_questions(user_id: int, set_id: int, count: Optional[int] = None,
                       user: models.User = Depends(require_path_user), db: Session = Depends(get_session),
                       store: BlobStore = Depends(get_blob_store),
                       generator: QuestionGenerator = Depends(get_generator),
                       limiter: InMemoryRateLimiter = Depends(get_rate_limiter)):
    """Generate questions for a set from its uploaded PDF.

    Replaces any earlier questions of the set. Returns 409 while another
    generation for the same set is running.
    """
    _enforce_generate_rate_limit(limiter, user_id)
    if count is not None and count < 1:
        raise HTTPException(status_code=400, detail="count must be >= 1")
    created = services.StudySetService(db, store, generator).generate_questions(user_id, set_id, count)
    return GenerateOut(created=created, status=StudySetStatus.READY)


@app.get('/users/{user_id}/sets/{set_id}/questions', response_model=List[QuestionOut])
def list_set_questions(user_id: int, set_id: int, user: models.User = Depends(require_path_user),
                       db: Session = Depends(get_session)):
    return services.StudySetService(db).list_questions(user_id, set_id)


# ---------------------------------------------------------------------------
# uploads
# ---------------------------------------------------------------------------

@app.post('/users/{user_id}/uploads', response_model=UploadCreatedOut, status_code=201)
def upload_pdf(user_id: int, file: UploadFile = File(...), user: models.User = Depends(require_path_user),
               db: Session = Depends(get_session), store: BlobStore = Depends(get_blob_store)):
    """Store an uploaded PDF and return its id for use in study sets."""
    # one byte past the limit is enough to reject oversized files
    data = file.file.read(settings.MAX_UPLOAD_BYTES + 1)
    doc = services.UploadService(db, store).store_upload(user_id, file.filename, file.content_type, data)
    logger.info("stored upload %s for user %s (%s bytes)", doc.id, user_id, doc.size)
    return UploadCreatedOut(upload_id=doc.id)


@app.get('/users/{user_id}/uploads', response_model=List[UploadOut])
def list_uploads(user_id: int, user: models.User = Depends(require_path_user),
                 db: Session = Depends(get_session), store: BlobStore = Depends(get_blob_store)):
    return services.UploadService(db, store).list(user_id)


@app.delete('/users/{user_id}/uploads/{upload_id}', status_code=204)
def delete_upload(user_id: int, upload_id: int, user: models.User = Depends(require_path_user),
                  db: Session = Depends(get_session), store: BlobStore = Depends(get_blob_store)):
    services.UploadService(db, store).delete(user_id, upload_id)
    return Response(status_code=204)


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}
