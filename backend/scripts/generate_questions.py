"""CLI script to (re)generate the questions of one study set.

Usage: python scripts/generate_questions.py USER_ID SET_ID [--count N]

Runs the same lifecycle as `POST /users/{userId}/sets/{setId}/generate`
against the configured database and upload directory, which is handy when
trying out generator settings without a frontend.
"""
import argparse
import logging
import pathlib
import sys
from typing import Optional

# Ensure `backend/` is on sys.path so `studyquiz` imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlmodel import Session  # noqa: E402

from studyquiz import services  # noqa: E402
from studyquiz.config import settings  # noqa: E402
from studyquiz.database import create_db_and_tables, engine  # noqa: E402
from studyquiz.errors import AppError  # noqa: E402
from studyquiz.generators import build_generator  # noqa: E402
from studyquiz.utils.storage import BlobStore  # noqa: E402


def main(user_id: int, set_id: int, count: Optional[int] = None) -> int:
    create_db_and_tables()
    generator = build_generator(settings)
    with Session(engine) as session:
        svc = services.StudySetService(session, BlobStore(settings.UPLOAD_DIR), generator)
        try:
            created = svc.generate_questions(user_id, set_id, count)
        except AppError as e:
            print(f'error ({e.status_code}): {e.message}')
            return 1
        for q in svc.list_questions(user_id, set_id):
            print(f'- {q.stem}')
            for i, choice in enumerate(q.choices):
                marker = '*' if i == q.correct_index else ' '
                print(f'   {marker} {choice}')
    print(f'created {created} questions using the {settings.QUESTION_GENERATOR} generator')
    return 0


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    p = argparse.ArgumentParser(description='Generate questions for a study set')
    p.add_argument('user_id', type=int)
    p.add_argument('set_id', type=int)
    p.add_argument('--count', type=int, default=None, help='hint for the heuristic generator')
    args = p.parse_args()
    sys.exit(main(args.user_id, args.set_id, args.count))
