import io

import pytest

from conftest import make_pdf
from studyquiz.utils.pdf_text import extract_text, normalize_text
from studyquiz.utils.rate_limit import InMemoryRateLimiter
from studyquiz.utils.storage import BlobStore


def test_normalize_text_joins_hyphenated_breaks():
    raw = "Photo-\nsynthesis happens   in\n\nleaves.\r\nNext line"
    assert normalize_text(raw) == "Photosynthesis happens in leaves. Next line"


def test_extract_text_reads_all_lines(script_pdf):
    text = extract_text(script_pdf)
    assert "Photosynthesis converts light energy" in text
    assert "inside the chloroplasts" in text
    assert "\n" not in text


def test_extract_text_accepts_file_objects():
    pdf = make_pdf(["Hello from a stream"])
    assert extract_text(io.BytesIO(pdf)) == "Hello from a stream"


def test_extract_text_rejects_garbage():
    with pytest.raises(ValueError) as exc:
        extract_text(b"this is not a pdf at all")
    assert "could not read PDF" in str(exc.value)


def test_blob_store_round_trip_and_delete(tmp_path):
    store = BlobStore(tmp_path)
    sid = store.put(b"%PDF-1.4 data")
    with store.open(sid) as fh:
        assert fh.read() == b"%PDF-1.4 data"
    store.delete(sid)
    store.delete(sid)
    with pytest.raises(FileNotFoundError):
        store.open(sid)


def test_blob_store_rejects_foreign_ids(tmp_path):
    store = BlobStore(tmp_path)
    with pytest.raises(FileNotFoundError):
        store.open("../../etc/passwd")


def test_rate_limiter_blocks_then_recovers():
    now = [100.0]
    limiter = InMemoryRateLimiter(clock=lambda: now[0])
    assert limiter.allow("k", 2, 60) == (True, 0)
    assert limiter.allow("k", 2, 60) == (True, 0)
    allowed, retry_after = limiter.allow("k", 2, 60)
    assert not allowed
    assert retry_after == 60
    assert limiter.allow("other", 2, 60)[0]
    now[0] += 61
    assert limiter.allow("k", 2, 60) == (True, 0)
    assert limiter.allow("k", 0, 60) == (True, 0)
