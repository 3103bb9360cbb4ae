"""Business logic services used by HTTP controllers.

Services receive the `Database` gateway at construction time and open
their own sessions or units of work, so a service call is the unit that
commits or rolls back. `EnrollmentService` is the only writer of
`Course.enrolled_count`.
"""

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import jwt
from passlib.context import CryptContext
from sqlalchemy.exc import IntegrityError

from . import models, repositories
from .config import Settings
from .database import Database, is_unique_violation
from .errors import AuthError, ConflictError, NotFoundError, ValidationError
from .schemas import CourseIn, RegisterIn, StudentIn

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

logger = logging.getLogger("cms_api.enrollment")
auth_logger = logging.getLogger("cms_api.auth")


def _log_event(log: logging.Logger, name: str, **fields) -> None:
    log.info("%s %s", name, json.dumps(fields, default=str, ensure_ascii=True))


@contextmanager
def _conflict_on_duplicate(message: str):
    """Report an insert that lost a race on a unique key as a conflict."""
    try:
        yield
    except IntegrityError as exc:
        if not is_unique_violation(exc):
            raise
        raise ConflictError(message) from exc


def course_dict(course: models.Course) -> dict:
    return {
        'code': course.code,
        'name': course.name,
        'description': course.description,
        'semester': course.semester,
        'credits': course.credits,
        'instructor': course.instructor,
        'capacity': course.capacity,
        'enrolled_count': course.enrolled_count,
        'available_seats': course.available_seats,
    }


def student_dict(student: models.Student) -> dict:
    return {'id': student.id, 'name': student.name, 'semester': student.semester, 'contact': student.contact}


def enrollment_dict(enrollment: models.Enrollment) -> dict:
    return {
        'id': enrollment.id,
        'student_id': enrollment.student_id,
        'course_code': enrollment.course_code,
        'enrolled_at': enrollment.enrolled_at,
        'status': enrollment.status.value,
        'grade': enrollment.grade,
    }


def user_dict(user: models.User) -> dict:
    """Public view of an identity; the password hash never leaves the service."""
    return {
        'id': user.id,
        'name': user.name,
        'email': user.email,
        'role': user.role,
        'student_id': user.student_id,
        'created_at': user.created_at,
    }


class EnrollmentService:
    """Enroll students and move enrollments through their lifecycle.

    Every operation runs in one unit of work that first locks the target
    course row, so concurrent calls against the same course are serialized
    and every check below sees the locked counter, never an earlier read.
    """
    def __init__(self, db: Database):
        self.db = db

    def enroll(self, student_id: str, course_code: str) -> models.Enrollment:
        """Create an active enrollment and take one seat.

        Checks run in a fixed order, each failing fast:
        course exists, student exists, pair not enrolled before, seat free.
        The enrollment insert and the counter increment commit together or
        not at all.
        """
        with self.db.unit_of_work() as session:
            courses = repositories.CourseRepository(session)
            enrollments = repositories.EnrollmentRepository(session)
            course = courses.get_for_update(course_code)
            if course is None:
                raise NotFoundError('course')
            if repositories.StudentRepository(session).get(student_id) is None:
                raise NotFoundError('student')
            if enrollments.find(student_id, course_code) is not None:
                raise ConflictError('already enrolled')
            if course.enrolled_count >= course.capacity:
                raise ConflictError('course full')
            enrollment = enrollments.add(models.Enrollment(student_id=student_id, course_code=course_code))
            courses.adjust_count(course, +1)
        _log_event(logger, 'enrolled', enrollment_id=enrollment.id, student_id=student_id,
                   course_code=course_code, enrolled_count=course.enrolled_count, capacity=course.capacity)
        return enrollment

    def set_status(self, enrollment_id: int, status, grade: Optional[str] = None) -> models.Enrollment:
        """Move an enrollment to `status`, releasing its seat when it stops being active.

        Only transitions allowed by `EnrollmentStatus.can_transition_to` are
        accepted; repeating a drop is a conflict, so a seat is never released
        twice. `grade` is accepted only together with `completed`.
        """
        try:
            target = models.EnrollmentStatus(status)
        except ValueError:
            raise ValidationError(f'unknown enrollment status: {status}')
        if grade is not None and target is not models.EnrollmentStatus.COMPLETED:
            raise ValidationError('grade can only be set when completing an enrollment')
        with self.db.unit_of_work() as session:
            enrollments = repositories.EnrollmentRepository(session)
            courses = repositories.CourseRepository(session)
            enrollment = enrollments.get_for_update(enrollment_id)
            if enrollment is None:
                raise NotFoundError('enrollment')
            course = courses.get_for_update(enrollment.course_code)
            current = enrollment.status
            if not current.can_transition_to(target):
                raise ConflictError(f'cannot change status from {current.value} to {target.value}')
            enrollment.status = target
            if grade is not None:
                enrollment.grade = grade
            session.add(enrollment)
            session.flush()
            if current.holds_seat and not target.holds_seat:
                courses.adjust_count(course, -1)
        _log_event(logger, 'status_changed', enrollment_id=enrollment_id, course_code=course.code,
                   previous=current.value, status=target.value, enrolled_count=course.enrolled_count)
        return enrollment

    def recount(self, course_code: str) -> models.Course:
        """Reset `enrolled_count` from a live count of active enrollments."""
        with self.db.unit_of_work() as session:
            courses = repositories.CourseRepository(session)
            course = courses.get_for_update(course_code)
            if course is None:
                raise NotFoundError('course')
            live = courses.count_active(course_code)
            if live != course.enrolled_count:
                logger.warning('counter drift on %s: stored=%s live=%s', course_code, course.enrolled_count, live)
                course.enrolled_count = live
                session.add(course)
                session.flush()
        return course


class QueryService:
    """Read-only listings. Not transactional with enrollment writes."""
    def __init__(self, db: Database):
        self.db = db

    def list_courses(self, semester: Optional[int] = None) -> List[models.Course]:
        with self.db.session() as session:
            return repositories.CourseRepository(session).list(semester)

    def get_course(self, code: str) -> models.Course:
        with self.db.session() as session:
            course = repositories.CourseRepository(session).get(code)
        if course is None:
            raise NotFoundError('course')
        return course

    def list_students(self) -> List[models.Student]:
        with self.db.session() as session:
            return repositories.StudentRepository(session).list_all()

    def get_student(self, student_id: str) -> models.Student:
        with self.db.session() as session:
            student = repositories.StudentRepository(session).get(student_id)
        if student is None:
            raise NotFoundError('student')
        return student

    def get_enrollment(self, enrollment_id: int) -> models.Enrollment:
        with self.db.session() as session:
            enrollment = repositories.EnrollmentRepository(session).get(enrollment_id)
        if enrollment is None:
            raise NotFoundError('enrollment')
        return enrollment

    def list_student_enrollments(self, student_id: str) -> List[dict]:
        """Return a student's enrollments joined with course display fields."""
        with self.db.session() as session:
            if repositories.StudentRepository(session).get(student_id) is None:
                raise NotFoundError('student')
            rows = repositories.EnrollmentRepository(session).list_for_student(student_id)
        out = []
        for enrollment, course in rows:
            item = enrollment_dict(enrollment)
            item.update({
                'course_name': course.name,
                'description': course.description,
                'instructor': course.instructor,
                'credits': course.credits,
                'semester': course.semester,
            })
            out.append(item)
        return out

    def list_enrollments(self) -> List[dict]:
        """Return all enrollments with course and student names."""
        with self.db.session() as session:
            rows = repositories.EnrollmentRepository(session).list_all()
        out = []
        for enrollment, course_name, student_name in rows:
            item = enrollment_dict(enrollment)
            item['course_name'] = course_name
            item['student_name'] = student_name
            out.append(item)
        return out

    def profile(self, user: models.User) -> dict:
        out = user_dict(user)
        out['enrollment_count'] = 0
        if user.student_id:
            with self.db.session() as session:
                out['enrollment_count'] = repositories.EnrollmentRepository(session).count_for_student(user.student_id)
        return out


class CatalogService:
    """Create course and student records."""
    def __init__(self, db: Database):
        self.db = db

    def create_course(self, data: CourseIn) -> models.Course:
        with self.db.unit_of_work() as session:
            courses = repositories.CourseRepository(session)
            if courses.get(data.code) is not None:
                raise ConflictError(f'course {data.code} already exists')
            with _conflict_on_duplicate(f'course {data.code} already exists'):
                course = courses.add(models.Course(**data.model_dump()))
        _log_event(logger, 'course_created', code=course.code, capacity=course.capacity)
        return course

    def create_student(self, data: StudentIn) -> models.Student:
        with self.db.unit_of_work() as session:
            students = repositories.StudentRepository(session)
            if students.get(data.id) is not None:
                raise ConflictError(f'student {data.id} already exists')
            with _conflict_on_duplicate(f'student {data.id} already exists'):
                return students.add(models.Student(**data.model_dump()))


class AuthService:
    """Authentication related operations (register + login + token issue)."""
    def __init__(self, db: Database, settings: Settings):
        self.db = db
        self.settings = settings

    def register(self, data: RegisterIn) -> models.User:
        """Create a student identity with a hashed password.

        When `student_id` is given the identity is linked to that student
        record, which is created in the same transaction if it is missing.
        A student record can back at most one identity.
        """
        with self.db.unit_of_work() as session:
            users = repositories.UserRepository(session)
            if users.get_by_email(data.email) is not None:
                raise ConflictError('user already exists')
            if data.student_id:
                students = repositories.StudentRepository(session)
                if students.get(data.student_id) is None:
                    with _conflict_on_duplicate('student already has an account'):
                        students.add(models.Student(id=data.student_id, name=data.name,
                                                    semester=data.semester, contact=data.contact))
                elif users.get_by_student_id(data.student_id) is not None:
                    raise ConflictError('student already has an account')
            with _conflict_on_duplicate('user already exists'):
                user = users.add(models.User(
                    name=data.name,
                    email=data.email,
                    password_hash=PWD_CTX.hash(data.password),
                    role=models.ROLE_STUDENT,
                    student_id=data.student_id,
                ))
        _log_event(auth_logger, 'registered', user_id=user.id, student_id=user.student_id)
        return user

    def login(self, email: str, password: str) -> Tuple[models.User, str]:
        """Verify credentials and return the user with a signed token."""
        with self.db.session() as session:
            user = repositories.UserRepository(session).get_by_email(email)
        # One lookup by email then verify the supplied password hash.
        if user is None or not PWD_CTX.verify(password, user.password_hash):
            raise AuthError('invalid credentials')
        return user, self.issue_token(user)

    def issue_token(self, user: models.User) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            'user_id': user.id,
            'email': user.email,
            'role': user.role,
            'name': user.name,
            'iat': int(now.timestamp()),
            'exp': int((now + timedelta(hours=self.settings.JWT_EXPIRE_HOURS)).timestamp()),
        }
        return jwt.encode(payload, self.settings.JWT_SECRET, algorithm=self.settings.JWT_ALGORITHM)
