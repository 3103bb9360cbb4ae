"""Schema creation and reference data seeding.

`initialize` brings a database to the current schema and inserts the demo
rows that are missing. It never drops or rewrites existing rows, so it is
safe to run on every start; each `Database` instance runs it once.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import SQLModel

from . import models, repositories
from .config import Settings
from .database import Database
from .errors import StorageError
from .services import PWD_CTX

logger = logging.getLogger("cms_api.bootstrap")

SEED_COURSES = [
    {'code': 'CSC-601', 'name': 'Mobile Application Development',
     'description': 'Android app development with Java and Kotlin',
     'semester': 6, 'credits': 3, 'instructor': 'John Doe', 'capacity': 35},
    {'code': 'CSC-602', 'name': 'Web Engineering',
     'description': 'Full stack web development',
     'semester': 6, 'credits': 4, 'instructor': 'Jane Smith', 'capacity': 25},
    {'code': 'MTH-301', 'name': 'Data Structures and Algorithms',
     'description': 'Fundamental data structures and algorithms',
     'semester': 3, 'credits': 3, 'instructor': 'Robert Johnson', 'capacity': 30},
]

SEED_STUDENT = {'id': 'CSC-23S-061', 'name': 'Default Student', 'semester': 6, 'contact': 'student@cms.com'}


def create_schema(db: Database) -> None:
    SQLModel.metadata.create_all(db.engine)


def seed(db: Database, settings: Settings) -> dict:
    """Insert seed rows that are absent; return how many of each were added."""
    added = {'courses': 0, 'students': 0, 'users': 0}
    with db.unit_of_work() as session:
        courses = repositories.CourseRepository(session)
        for row in SEED_COURSES:
            if courses.get(row['code']) is None:
                courses.add(models.Course(**row))
                added['courses'] += 1
        students = repositories.StudentRepository(session)
        if students.get(SEED_STUDENT['id']) is None:
            students.add(models.Student(**SEED_STUDENT))
            added['students'] += 1
        users = repositories.UserRepository(session)
        if users.get_by_email(settings.ADMIN_EMAIL) is None:
            users.add(models.User(
                name='Admin User',
                email=settings.ADMIN_EMAIL,
                password_hash=PWD_CTX.hash(settings.ADMIN_PASSWORD),
                role=models.ROLE_ADMIN,
            ))
            added['users'] += 1
    return added


def initialize(db: Database, settings: Settings) -> None:
    """Create tables and seed data once per `Database`.

    Raises `StorageError` when the database cannot be prepared; the
    application treats that as fatal at startup.
    """
    if db.initialized:
        return
    try:
        db.ensure_storage()
        create_schema(db)
    except (OSError, SQLAlchemyError) as exc:
        logger.critical("schema creation failed for %s: %s", db.engine.url.render_as_string(hide_password=True), exc)
        raise StorageError("schema initialization failed") from exc
    if settings.SEED_DEMO_DATA:
        added = seed(db, settings)
        logger.info("seed complete %s", added)
    db.initialized = True
    logger.info("database ready (%s)", db.dialect)
