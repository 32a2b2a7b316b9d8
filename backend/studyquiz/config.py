"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent

GENERATORS = ("heuristic", "llm")


class Settings:
    ENV: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    SESSION_TTL_DAYS: int
    DATABASE_URL: str
    UPLOAD_DIR: Path
    MAX_UPLOAD_BYTES: int
    ALLOW_INSECURE_JWT: bool
    ALLOW_DEV_CORS: bool
    QUESTION_GENERATOR: str
    GENERATION_DEFAULT_COUNT: int
    SENTENCE_LANGUAGE: str
    GENERATION_STALE_SECONDS: int
    GENERATE_RATE_LIMIT_PER_MIN: int
    LLM_API_KEY: str
    LLM_BASE_URL: str
    LLM_MODEL: str
    LLM_TIMEOUT_SECONDS: float
    LLM_CLIP_CHARS: int
    LLM_MAX_TOKENS: int

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.SESSION_TTL_DAYS = int(os.getenv("SESSION_TTL_DAYS", "7"))
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'app.db'}")
        self.UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", str(BASE / "data" / "uploads"))).expanduser()
        self.MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(20 * 1024 * 1024)))  # 20 MB default
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self.QUESTION_GENERATOR = os.getenv("QUESTION_GENERATOR", "heuristic").strip().lower()
        self.GENERATION_DEFAULT_COUNT = int(os.getenv("GENERATION_DEFAULT_COUNT", "10"))
        # spaCy language code for sentence splitting; lecture scripts are mostly German
        self.SENTENCE_LANGUAGE = os.getenv("SENTENCE_LANGUAGE", "de").strip().lower()
        self.GENERATION_STALE_SECONDS = int(os.getenv("GENERATION_STALE_SECONDS", "600"))
        self.GENERATE_RATE_LIMIT_PER_MIN = int(os.getenv("GENERATE_RATE_LIMIT_PER_MIN", "10"))
        self.LLM_API_KEY = os.getenv("LLM_API_KEY", "").strip()
        self.LLM_BASE_URL = os.getenv("LLM_BASE_URL", "https://api.deepseek.com")
        self.LLM_MODEL = os.getenv("LLM_MODEL", "deepseek-chat")
        self.LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "90"))
        self.LLM_CLIP_CHARS = int(os.getenv("LLM_CLIP_CHARS", "8000"))
        self.LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "2500"))
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.QUESTION_GENERATOR not in GENERATORS:
            raise RuntimeError(f"QUESTION_GENERATOR must be one of {', '.join(GENERATORS)}")
        if self.QUESTION_GENERATOR == "llm" and not self.LLM_API_KEY:
            raise RuntimeError("LLM_API_KEY must be set when QUESTION_GENERATOR=llm")
        if self.GENERATION_DEFAULT_COUNT < 1:
            raise RuntimeError("GENERATION_DEFAULT_COUNT must be >= 1")


settings = Settings()
