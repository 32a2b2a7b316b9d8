from datetime import timedelta

import pytest
from sqlmodel import select

from studyquiz import models
from studyquiz.errors import BadRequest, Conflict, Forbidden, GenerationError, InternalError, NotFound
from studyquiz.models import StudySetStatus, utcnow
from studyquiz.services import CourseService, StudySetService, UploadService


class ListGenerator:
    def __init__(self, items=None, error=None):
        self.items = items or []
        self.error = error
        self.calls = []

    def generate(self, text, count=None):
        self.calls.append((text, count))
        if self.error:
            raise self.error
        return self.items


def _user(session, email="owner@example.com"):
    user = models.User(name="Owner", email=email, password_hash="x")
    session.add(user)
    session.commit()
    return user.id


def _set_with_upload(session, blob_store, pdf_bytes, email="owner@example.com"):
    user_id = _user(session, email)
    course = CourseService(session).create(user_id, "Biology")
    upload = UploadService(session, blob_store).store_upload(user_id, "script.pdf", "application/pdf", pdf_bytes)
    svc = StudySetService(session)
    study_set = svc.create(user_id, course.id, "Cells", upload.id)
    return user_id, course.id, study_set.id


def test_generation_creates_questions_and_marks_ready(session, blob_store, generator, script_pdf):
    user_id, _, set_id = _set_with_upload(session, blob_store, script_pdf)
    svc = StudySetService(session, blob_store, generator)
    assert svc.get(user_id, set_id).status == StudySetStatus.PENDING

    created = svc.generate_questions(user_id, set_id)
    assert created == 3
    study_set = svc.get(user_id, set_id)
    assert study_set.status == StudySetStatus.READY
    assert study_set.last_error is None
    assert study_set.generation_started_at is None
    questions = svc.list_questions(user_id, set_id)
    assert len(questions) == 3
    for q in questions:
        assert len(q.choices) == 4
        assert 0 <= q.correct_index <= 3
    assert questions[0].choices[questions[0].correct_index].startswith("Photosynthesis converts light energy")


def test_regeneration_replaces_previous_questions(session, blob_store, generator, script_pdf):
    user_id, _, set_id = _set_with_upload(session, blob_store, script_pdf)
    svc = StudySetService(session, blob_store, generator)
    svc.generate_questions(user_id, set_id)
    assert svc.generate_questions(user_id, set_id, count=2) == 2
    questions = svc.list_questions(user_id, set_id)
    assert len(questions) == 2
    assert len(session.exec(select(models.Question)).all()) == 2


def test_unreadable_pdf_marks_set_failed(session, blob_store, generator):
    user_id, _, set_id = _set_with_upload(session, blob_store, b"%PDF-1.4 truncated nonsense")
    svc = StudySetService(session, blob_store, generator)
    with pytest.raises(InternalError) as exc:
        svc.generate_questions(user_id, set_id)
    assert "could not read PDF" in exc.value.message
    study_set = svc.get(user_id, set_id)
    assert study_set.status == StudySetStatus.FAILED
    assert "could not read PDF" in study_set.last_error


def test_failed_regeneration_discards_old_questions(session, blob_store, generator, script_pdf):
    user_id, _, set_id = _set_with_upload(session, blob_store, script_pdf)
    StudySetService(session, blob_store, generator).generate_questions(user_id, set_id)
    junk = ListGenerator([{'stem': 'Q', 'choices': ['only one'], 'correct_index': 0}])
    svc = StudySetService(session, blob_store, junk)
    with pytest.raises(InternalError) as exc:
        svc.generate_questions(user_id, set_id)
    assert "no valid questions" in exc.value.message
    assert svc.get(user_id, set_id).status == StudySetStatus.FAILED
    assert svc.list_questions(user_id, set_id) == []


def test_generator_crash_during_regeneration_leaves_no_questions(session, blob_store, generator, script_pdf):
    user_id, _, set_id = _set_with_upload(session, blob_store, script_pdf)
    StudySetService(session, blob_store, generator).generate_questions(user_id, set_id)
    crashing = ListGenerator(error=RuntimeError("model server went away"))
    svc = StudySetService(session, blob_store, crashing)
    with pytest.raises(InternalError):
        svc.generate_questions(user_id, set_id)
    assert session.exec(select(models.Question)).all() == []
    study_set = svc.get(user_id, set_id)
    assert study_set.status == StudySetStatus.FAILED
    assert study_set.last_error == "model server went away"


def test_generator_error_is_reported(session, blob_store, script_pdf):
    user_id, _, set_id = _set_with_upload(session, blob_store, script_pdf)
    failing = ListGenerator(error=GenerationError("LLM call timed out after 3 attempts"))
    svc = StudySetService(session, blob_store, failing)
    with pytest.raises(InternalError) as exc:
        svc.generate_questions(user_id, set_id)
    assert exc.value.message == "generation failed: LLM call timed out after 3 attempts"
    assert svc.get(user_id, set_id).last_error == "LLM call timed out after 3 attempts"
    # a failed set can be generated again
    ok = ListGenerator([{'stem': 'Q', 'choices': ['a', 'b', 'c', 'd'], 'correctIndex': 1, 'explanation': 'because'}])
    assert StudySetService(session, blob_store, ok).generate_questions(user_id, set_id) == 1
    assert svc.get(user_id, set_id).status == StudySetStatus.READY


def test_count_hint_is_passed_to_generator(session, blob_store, script_pdf):
    user_id, _, set_id = _set_with_upload(session, blob_store, script_pdf)
    gen = ListGenerator([{'stem': 'Q', 'choices': ['a', 'b', 'c', 'd'], 'correct_index': 0}])
    StudySetService(session, blob_store, gen).generate_questions(user_id, set_id, count=5)
    text, count = gen.calls[0]
    assert count == 5
    assert "chloroplasts" in text


def test_running_generation_blocks_a_second_one(session, blob_store, generator, script_pdf):
    user_id, _, set_id = _set_with_upload(session, blob_store, script_pdf)
    study_set = session.get(models.StudySet, set_id)
    study_set.status = StudySetStatus.IN_PROGRESS
    study_set.generation_started_at = utcnow()
    session.add(study_set)
    session.commit()
    svc = StudySetService(session, blob_store, generator)
    with pytest.raises(Conflict):
        svc.generate_questions(user_id, set_id)
    assert svc.get(user_id, set_id).status == StudySetStatus.IN_PROGRESS


def test_stale_claim_is_taken_over(session, blob_store, generator, script_pdf):
    user_id, _, set_id = _set_with_upload(session, blob_store, script_pdf)
    study_set = session.get(models.StudySet, set_id)
    study_set.status = StudySetStatus.IN_PROGRESS
    study_set.generation_started_at = utcnow() - timedelta(hours=1)
    session.add(study_set)
    session.commit()
    svc = StudySetService(session, blob_store, generator, stale_seconds=600)
    assert svc.generate_questions(user_id, set_id) == 3
    assert svc.get(user_id, set_id).status == StudySetStatus.READY


def test_generation_preconditions(session, blob_store, generator, script_pdf):
    user_id, course_id, set_id = _set_with_upload(session, blob_store, script_pdf)
    svc = StudySetService(session, blob_store, generator)
    bare = svc.create(user_id, course_id, "No upload yet")
    with pytest.raises(BadRequest):
        svc.generate_questions(user_id, bare.id)
    assert svc.get(user_id, bare.id).status == StudySetStatus.PENDING

    intruder = _user(session, "intruder@example.com")
    with pytest.raises(Forbidden):
        svc.generate_questions(intruder, set_id)
    with pytest.raises(NotFound):
        svc.generate_questions(user_id, 9999)


def test_missing_blob_fails_generation(session, blob_store, generator, script_pdf):
    user_id, _, set_id = _set_with_upload(session, blob_store, script_pdf)
    upload = session.get(models.UploadDoc, session.get(models.StudySet, set_id).upload_id)
    blob_store.delete(upload.storage_id)
    svc = StudySetService(session, blob_store, generator)
    with pytest.raises(InternalError):
        svc.generate_questions(user_id, set_id)
    assert svc.get(user_id, set_id).status == StudySetStatus.FAILED


def test_create_set_checks_course_and_upload_ownership(session, blob_store, script_pdf):
    user_id, course_id, _ = _set_with_upload(session, blob_store, script_pdf)
    other = _user(session, "other@example.com")
    foreign_upload = UploadService(session, blob_store).store_upload(other, "x.pdf", "application/pdf", script_pdf)
    svc = StudySetService(session)
    with pytest.raises(Forbidden):
        svc.create(other, course_id, "Mine now")
    with pytest.raises(Forbidden):
        svc.create(user_id, course_id, "Borrowed", foreign_upload.id)
    with pytest.raises(BadRequest):
        svc.create(user_id, course_id, "Ghost", 4242)
    with pytest.raises(BadRequest):
        svc.create(user_id, course_id, "   ")
    with pytest.raises(NotFound):
        svc.create(user_id, 4242, "No course")


def test_upload_validation_stores_nothing_on_rejection(session, blob_store):
    user_id = _user(session)
    svc = UploadService(session, blob_store)
    with pytest.raises(BadRequest):
        svc.store_upload(user_id, "notes.txt", "text/plain", b"plain text")
    with pytest.raises(BadRequest):
        svc.store_upload(user_id, "empty.pdf", "application/pdf", b"")
    with pytest.raises(BadRequest):
        svc.store_upload(user_id, "../evil.pdf", "application/pdf", b"%PDF")
    assert svc.list(user_id) == []
    assert not blob_store.root.exists() or not any(blob_store.root.rglob("*"))


def test_course_delete_cascades(session, blob_store, generator, script_pdf):
    user_id, course_id, set_id = _set_with_upload(session, blob_store, script_pdf)
    StudySetService(session, blob_store, generator).generate_questions(user_id, set_id)
    CourseService(session).delete(user_id, course_id)
    assert session.get(models.StudySet, set_id) is None
    assert session.exec(select(models.Question)).all() == []
    with pytest.raises(NotFound):
        CourseService(session).get(user_id, course_id)


def test_read_only_operations_need_no_store_or_generator(session, blob_store, generator, script_pdf):
    user_id, course_id, set_id = _set_with_upload(session, blob_store, script_pdf)
    StudySetService(session, blob_store, generator).generate_questions(user_id, set_id)
    svc = StudySetService(session)
    assert [s.id for s in svc.list(user_id, course_id)] == [set_id]
    assert svc.get(user_id, set_id).status == StudySetStatus.READY
    assert len(svc.list_questions(user_id, set_id)) == 3
    bare = svc.create(user_id, course_id, "Later")
    svc.delete(user_id, course_id, bare.id)
    with pytest.raises(NotFound):
        svc.get(user_id, bare.id)
