from pathlib import Path
import random

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine


@pytest.fixture(scope="session", autouse=True)
def reset_db():
    """Ensure a fresh SQLite file for the app import; tests use in-memory engines."""
    db_path = Path(__file__).resolve().parents[1] / "app.db"
    if db_path.exists():
        try:
            db_path.unlink()
        except OSError:
            pass
    yield


@pytest.fixture
def engine():
    from studyquiz import models  # noqa: F401
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    SQLModel.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def blob_store(tmp_path):
    from studyquiz.utils.storage import BlobStore
    return BlobStore(tmp_path / "uploads")


@pytest.fixture
def generator():
    from studyquiz.generators import HeuristicQuestionGenerator
    return HeuristicQuestionGenerator(rng=random.Random(7), default_count=10)


@pytest.fixture
def client(engine, blob_store, generator):
    from studyquiz import main
    from studyquiz.database import get_session
    from studyquiz.utils.rate_limit import InMemoryRateLimiter

    def _session():
        with Session(engine) as s:
            yield s

    limiter = InMemoryRateLimiter()
    main.app.dependency_overrides[get_session] = _session
    main.app.dependency_overrides[main.get_blob_store] = lambda: blob_store
    main.app.dependency_overrides[main.get_generator] = lambda: generator
    main.app.dependency_overrides[main.get_rate_limiter] = lambda: limiter
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


def make_pdf(lines) -> bytes:
    """Build a one-page PDF that draws each string in `lines` on its own line."""
    def esc(s):
        return s.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")

    ops = ["BT", "/F1 11 Tf", "14 TL", "50 750 Td"]
    for line in lines:
        ops.append(f"({esc(line)}) Tj T*")
    ops.append("ET")
    stream = "\n".join(ops).encode("latin-1")

    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] /Contents 4 0 R "
        b"/Resources << /Font << /F1 5 0 R >> >> >>",
        b"<< /Length " + str(len(stream)).encode() + b" >>\nstream\n" + stream + b"\nendstream",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]
    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for i, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += f"{i} 0 obj\n".encode() + body + b"\nendobj\n"
    xref_at = len(out)
    out += f"xref\n0 {len(objects) + 1}\n".encode()
    out += b"0000000000 65535 f \n"
    for off in offsets:
        out += f"{off:010d} 00000 n \n".encode()
    out += f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\nstartxref\n{xref_at}\n%%EOF\n".encode()
    return bytes(out)


SCRIPT_LINES = [
    "Photosynthesis converts light energy into chemical energy inside",
    "the chloroplasts of green plant cells.",
    "Mitochondria release the energy stored in glucose through cellular",
    "respiration and produce most of the ATP a cell needs.",
    "The cell membrane controls which substances may enter or leave the",
    "cell and keeps its internal environment stable.",
    "Short line.",
]


@pytest.fixture
def script_pdf() -> bytes:
    return make_pdf(SCRIPT_LINES)


def register(client, name="Ada", email="ada@example.com", password="secret1"):
    r = client.post('/auth/register', json={'name': name, 'email': email, 'password': password})
    assert r.status_code == 201, r.text
    body = r.json()
    return body['userId'], {'Authorization': f"Bearer {body['token']}"}
