"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (students,
courses, enrollments, users). Repositories never commit: writes are
flushed into the caller's unit of work, which decides whether the whole
transaction commits or rolls back.
"""

from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlmodel import Session, select

from . import models


class StudentRepository:
    """Lookup and insert helpers for `Student` rows."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, student_id: str) -> Optional[models.Student]:
        return self.session.get(models.Student, student_id)

    def add(self, student: models.Student) -> models.Student:
        self.session.add(student)
        self.session.flush()
        return student

    def list_all(self) -> List[models.Student]:
        return self.session.exec(select(models.Student).order_by(models.Student.id)).all()


class CourseRepository:
    """Course reads plus the locked read and counter update used by enrollment."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, code: str) -> Optional[models.Course]:
        return self.session.get(models.Course, code)

    def get_for_update(self, code: str) -> Optional[models.Course]:
        """Re-read a course with a row lock held until the transaction ends.

        `populate_existing` discards any copy already in the identity map so
        the counter is always the locked value.
        """
        stmt = (
            select(models.Course)
            .where(models.Course.code == code)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.session.exec(stmt).first()

    def add(self, course: models.Course) -> models.Course:
        self.session.add(course)
        self.session.flush()
        return course

    def list(self, semester: Optional[int] = None) -> List[models.Course]:
        stmt = select(models.Course)
        if semester is not None:
            stmt = stmt.where(models.Course.semester == semester)
        return self.session.exec(stmt.order_by(models.Course.code)).all()

    def adjust_count(self, course: models.Course, delta: int) -> models.Course:
        """Apply `delta` to `enrolled_count`.

        `course` must have been loaded with `get_for_update` in the same
        transaction; the lock is what makes read-then-write safe here.
        """
        course.enrolled_count = course.enrolled_count + delta
        self.session.add(course)
        self.session.flush()
        return course

    def count_active(self, code: str) -> int:
        stmt = select(func.count()).select_from(models.Enrollment).where(
            models.Enrollment.course_code == code,
            models.Enrollment.status == models.EnrollmentStatus.ACTIVE,
        )
        return self.session.exec(stmt).one()


class EnrollmentRepository:
    """Enrollment lookups, inserts and joined listings."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, enrollment_id: int) -> Optional[models.Enrollment]:
        return self.session.get(models.Enrollment, enrollment_id)

    def get_for_update(self, enrollment_id: int) -> Optional[models.Enrollment]:
        stmt = (
            select(models.Enrollment)
            .where(models.Enrollment.id == enrollment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.session.exec(stmt).first()

    def find(self, student_id: str, course_code: str) -> Optional[models.Enrollment]:
        """Return the row for a (student, course) pair regardless of status."""
        stmt = select(models.Enrollment).where(
            models.Enrollment.student_id == student_id,
            models.Enrollment.course_code == course_code,
        )
        return self.session.exec(stmt).first()

    def add(self, enrollment: models.Enrollment) -> models.Enrollment:
        self.session.add(enrollment)
        self.session.flush()
        self.session.refresh(enrollment)
        return enrollment

    def list_for_student(self, student_id: str) -> List[Tuple[models.Enrollment, models.Course]]:
        """Return a student's enrollments with their course, newest first."""
        stmt = (
            select(models.Enrollment, models.Course)
            .join(models.Course, models.Enrollment.course_code == models.Course.code)
            .where(models.Enrollment.student_id == student_id)
            .order_by(models.Enrollment.enrolled_at.desc(), models.Enrollment.id.desc())
        )
        return self.session.exec(stmt).all()

    def list_all(self) -> List[Tuple[models.Enrollment, str, str]]:
        """Return every enrollment with its course name and student name."""
        stmt = (
            select(models.Enrollment, models.Course.name, models.Student.name)
            .join(models.Course, models.Enrollment.course_code == models.Course.code)
            .join(models.Student, models.Enrollment.student_id == models.Student.id)
            .order_by(models.Enrollment.id)
        )
        return self.session.exec(stmt).all()

    def count_for_student(self, student_id: str) -> int:
        stmt = select(func.count()).select_from(models.Enrollment).where(
            models.Enrollment.student_id == student_id
        )
        return self.session.exec(stmt).one()


class UserRepository:
    """CRUD operations for `User` identities."""
    def __init__(self, session: Session):
        self.session = session

    def add(self, user: models.User) -> models.User:
        self.session.add(user)
        self.session.flush()
        self.session.refresh(user)
        return user

    def get(self, user_id: int) -> Optional[models.User]:
        return self.session.get(models.User, user_id)

    def get_by_email(self, email: str) -> Optional[models.User]:
        stmt = select(models.User).where(models.User.email == email.strip().lower())
        return self.session.exec(stmt).first()

    def get_by_student_id(self, student_id: str) -> Optional[models.User]:
        stmt = select(models.User).where(models.User.student_id == student_id)
        return self.session.exec(stmt).first()
