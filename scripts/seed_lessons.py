"""
Load lesson definitions from a JSON file into the lessons table.

The file holds a list of objects with ``id``, ``title`` and optionally
``description``, ``position`` and ``is_published``. Existing lessons with
the same id are updated in place.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from learnhub.config import get_settings, normalize_database_url
from learnhub.db import DbClient, LessonRecord, PostgresDbClient

logger = logging.getLogger(__name__)


def load_lessons(path: Path) -> list[LessonRecord]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON list")
    lessons = []
    for index, item in enumerate(data):
        if not item.get("id") or not item.get("title"):
            raise ValueError(f"Lesson #{index} needs both 'id' and 'title'")
        lessons.append(
            LessonRecord(
                id=str(item["id"]),
                title=str(item["title"]),
                description=str(item.get("description", "")),
                position=int(item.get("position", index)),
                is_published=bool(item.get("is_published", True)),
            )
        )
    return lessons


def seed(db: DbClient, lessons: list[LessonRecord]) -> int:
    for lesson in lessons:
        db.upsert_lesson(lesson)
        logger.info("Upserted lesson %s", lesson.id)
    return len(lessons)


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed lessons from JSON")
    parser.add_argument("path", type=Path, help="JSON file with lessons")
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="Override DATABASE_URL",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    if args.database_url:
        database_url = normalize_database_url(args.database_url)
    else:
        database_url = get_settings().database_url
    db = PostgresDbClient(database_url)
    try:
        count = seed(db, load_lessons(args.path))
    finally:
        db.close()
    print(f"Seeded {count} lesson(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
