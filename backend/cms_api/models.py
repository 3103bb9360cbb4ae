"""SQLModel data models.

This module defines the application's database tables using SQLModel.
`Course.enrolled_count` is a stored copy of the number of active
enrollments for the course; only `EnrollmentService` writes it, in the
same transaction as the enrollment row it accounts for.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import CheckConstraint, Column, Enum as SAEnum, UniqueConstraint
from sqlmodel import Field, SQLModel

ROLE_ADMIN = "admin"
ROLE_STUDENT = "student"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EnrollmentStatus(str, Enum):
    """Lifecycle of an enrollment.

    Only `ACTIVE` occupies a seat. Leaving `ACTIVE` is one-way: dropped and
    completed enrollments are final, and a pair cannot be re-enrolled.
    """
    ACTIVE = "active"
    DROPPED = "dropped"
    COMPLETED = "completed"

    @property
    def holds_seat(self) -> bool:
        return self is EnrollmentStatus.ACTIVE

    def can_transition_to(self, target: "EnrollmentStatus") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS = {
    EnrollmentStatus.ACTIVE: frozenset({EnrollmentStatus.DROPPED, EnrollmentStatus.COMPLETED}),
    EnrollmentStatus.DROPPED: frozenset(),
    EnrollmentStatus.COMPLETED: frozenset(),
}


class Student(SQLModel, table=True):
    """A student record keyed by its registry id (e.g. ``CSC-23S-061``)."""
    __tablename__ = "students"

    id: str = Field(primary_key=True, max_length=32)
    name: str = Field(max_length=100)
    semester: Optional[int] = None
    contact: Optional[str] = Field(default=None, max_length=100)


class Course(SQLModel, table=True):
    """A course offering with a seat limit.

    Fields:
    - `capacity`: maximum number of active enrollments
    - `enrolled_count`: current number of active enrollments
    """
    __tablename__ = "courses"
    __table_args__ = (
        CheckConstraint("capacity >= 0", name="ck_courses_capacity_nonneg"),
        CheckConstraint("enrolled_count >= 0", name="ck_courses_enrolled_nonneg"),
    )

    code: str = Field(primary_key=True, max_length=20)
    name: str = Field(max_length=200)
    description: Optional[str] = None
    semester: Optional[int] = Field(default=None, index=True)
    credits: int = 3
    instructor: str = Field(max_length=100)
    capacity: int = 30
    enrolled_count: int = 0
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def available_seats(self) -> int:
        return self.capacity - self.enrolled_count


class Enrollment(SQLModel, table=True):
    """A student's seat in a course; one row per pair for all time."""
    __tablename__ = "enrollments"
    __table_args__ = (
        UniqueConstraint("student_id", "course_code", name="uq_enrollments_student_course"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    student_id: str = Field(foreign_key="students.id", index=True, max_length=32)
    course_code: str = Field(foreign_key="courses.code", index=True, max_length=20)
    enrolled_at: datetime = Field(default_factory=_utcnow)
    status: EnrollmentStatus = Field(
        default=EnrollmentStatus.ACTIVE,
        sa_column=Column(
            SAEnum(
                EnrollmentStatus,
                name="enrollment_status",
                native_enum=False,
                length=20,
                values_callable=lambda members: [m.value for m in members],
            ),
            nullable=False,
        ),
    )
    grade: Optional[str] = Field(default=None, max_length=5)


class User(SQLModel, table=True):
    """A login identity.

    Fields:
    - `email`: unique login name, stored lower-cased
    - `password_hash`: hashed password string (never store plaintext)
    - `student_id`: the student record this identity acts for, if any
    """
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=100)
    email: str = Field(index=True, unique=True, max_length=100)
    password_hash: str
    role: str = Field(default=ROLE_STUDENT, max_length=20)
    student_id: Optional[str] = Field(default=None, foreign_key="students.id", unique=True, max_length=32)
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN
