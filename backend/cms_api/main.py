"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the course management backend.
Controllers are intentionally thin: they resolve the caller, delegate to
services, and shape results into the JSON envelope
``{"success": bool, "message"?: str, <payload>}``. Errors raised by
services carry their own HTTP status (see `cms_api.errors`).

Endpoints implemented:
- GET /health
- POST /auth/register, POST /auth/login
- GET /users/profile
- GET /students, GET /students/{id}, POST /students
- GET /courses, GET /courses/{code}, POST /courses, POST /courses/{code}/recount
- POST /enrollments, PUT /enrollments/{id}/status
- GET /enrollments, GET /enrollments/student, GET /enrollments/my-courses
"""

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import models, services
from .auth import get_admin_user, get_current_user
from .bootstrap import initialize
from .config import Settings
from .database import Database
from .errors import (
    AppError,
    ForbiddenError,
    LockTimeoutError,
    RateLimitedError,
    StorageError,
    ValidationError,
)
from .schemas import CourseIn, EnrollIn, LoginIn, RegisterIn, StatusIn, StudentIn
from .utils.rate_limit import LoginThrottle

API_VERSION = "1.0.0"

logger = logging.getLogger("cms_api.api")
router = APIRouter()


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _own_student_id(user: models.User) -> str:
    if not user.student_id:
        raise ForbiddenError('no student record is linked to this account')
    return user.student_id


# ---------------------------------------------------------------- health/info

@router.get("/")
def index():
    """Service banner with a short endpoint list."""
    return {
        'message': 'Course Management System API',
        'version': API_VERSION,
        'status': 'running',
        'endpoints': {
            'auth': ['POST /auth/register', 'POST /auth/login'],
            'courses': ['GET /courses', 'GET /courses/{code}', 'POST /courses (admin)'],
            'students': ['GET /students', 'GET /students/{id}', 'POST /students (admin)'],
            'enrollments': ['POST /enrollments', 'PUT /enrollments/{id}/status',
                            'GET /enrollments (admin)', 'GET /enrollments/student?id=',
                            'GET /enrollments/my-courses'],
            'profile': 'GET /users/profile',
        },
    }


@router.get("/health")
def health(db: Database = Depends(get_db)):
    """Liveness plus a storage round trip; 503 when the database is unreachable."""
    try:
        db.ping()
    except StorageError as exc:
        return JSONResponse(
            status_code=503,
            content={'status': 'unhealthy', 'database': 'disconnected', 'error': exc.message},
        )
    return {
        'status': 'healthy',
        'database': 'connected',
        'dialect': db.dialect,
        'timestamp': datetime.now(timezone.utc).isoformat(),
    }


# ----------------------------------------------------------------------- auth

@router.post("/auth/register", status_code=201)
def register(payload: RegisterIn, db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    """Register a student identity and return it with a fresh token."""
    auth = services.AuthService(db, settings)
    user = auth.register(payload)
    return {
        'success': True,
        'message': 'Registration successful',
        'user': services.user_dict(user),
        'token': auth.issue_token(user),
    }


@router.post("/auth/login")
def login(payload: LoginIn, request: Request, db: Database = Depends(get_db),
          settings: Settings = Depends(get_settings)):
    """Authenticate and return a bearer token valid for `JWT_EXPIRE_HOURS`."""
    throttle: LoginThrottle = request.app.state.login_throttle
    key = f"{request.client.host if request.client else 'unknown'}:{payload.email}"
    allowed, retry_after = throttle.check(key)
    if not allowed:
        raise RateLimitedError(f'too many login attempts; retry after {retry_after}s', retry_after)
    user, token = services.AuthService(db, settings).login(payload.email, payload.password)
    throttle.reset(key)
    return {'success': True, 'message': 'Login successful', 'user': services.user_dict(user), 'token': token}


@router.get("/users/profile")
def profile(db: Database = Depends(get_db), user: models.User = Depends(get_current_user)):
    return {'success': True, 'user': services.QueryService(db).profile(user)}


# ------------------------------------------------------------------- students

@router.get("/students")
def list_students(db: Database = Depends(get_db), user: models.User = Depends(get_current_user)):
    students = services.QueryService(db).list_students()
    return {'success': True, 'count': len(students), 'students': [services.student_dict(s) for s in students]}


@router.get("/students/{student_id}")
def get_student(student_id: str, db: Database = Depends(get_db), user: models.User = Depends(get_current_user)):
    return {'success': True, 'student': services.student_dict(services.QueryService(db).get_student(student_id))}


@router.post("/students", status_code=201)
def create_student(payload: StudentIn, db: Database = Depends(get_db), user: models.User = Depends(get_admin_user)):
    student = services.CatalogService(db).create_student(payload)
    return {'success': True, 'message': 'Student created successfully', 'student': services.student_dict(student)}


# -------------------------------------------------------------------- courses

@router.get("/courses")
def list_courses(
    semester: Optional[int] = Query(default=None, ge=1),
    db: Database = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    """List courses, optionally only those of one semester."""
    courses = services.QueryService(db).list_courses(semester)
    return {'success': True, 'count': len(courses), 'courses': [services.course_dict(c) for c in courses]}


@router.get("/courses/{code}")
def get_course(code: str, db: Database = Depends(get_db), user: models.User = Depends(get_current_user)):
    return {'success': True, 'course': services.course_dict(services.QueryService(db).get_course(code))}


@router.post("/courses", status_code=201)
def create_course(payload: CourseIn, db: Database = Depends(get_db), user: models.User = Depends(get_admin_user)):
    course = services.CatalogService(db).create_course(payload)
    return {'success': True, 'message': 'Course created successfully', 'course': services.course_dict(course)}


@router.post("/courses/{code}/recount")
def recount_course(code: str, db: Database = Depends(get_db), user: models.User = Depends(get_admin_user)):
    """Rebuild a course's enrolled_count from its active enrollments."""
    course = services.EnrollmentService(db).recount(code)
    return {'success': True, 'message': 'Enrollment count recomputed', 'course': services.course_dict(course)}


# ---------------------------------------------------------------- enrollments

@router.post("/enrollments", status_code=201)
def enroll(payload: EnrollIn, db: Database = Depends(get_db), user: models.User = Depends(get_current_user)):
    """Enroll a student in a course.

    Students enroll themselves (`student_id` may be omitted); administrators
    must name the student.
    """
    if user.is_admin:
        if not payload.student_id:
            raise ValidationError('student_id is required')
        student_id = payload.student_id
    else:
        student_id = _own_student_id(user)
        if payload.student_id and payload.student_id != student_id:
            raise ForbiddenError('students may only enroll themselves')
    enrollment = services.EnrollmentService(db).enroll(student_id, payload.course_code)
    course = services.QueryService(db).get_course(payload.course_code)
    return {
        'success': True,
        'message': 'Enrolled successfully',
        'enrollment': services.enrollment_dict(enrollment),
        'course': services.course_dict(course),
    }


@router.put("/enrollments/{enrollment_id}/status")
def set_enrollment_status(enrollment_id: int, payload: StatusIn, db: Database = Depends(get_db),
                          user: models.User = Depends(get_current_user)):
    """Change an enrollment's status.

    Administrators may drop or complete any enrollment; students may only
    drop their own.
    """
    if not user.is_admin:
        enrollment = services.QueryService(db).get_enrollment(enrollment_id)
        if enrollment.student_id != _own_student_id(user):
            raise ForbiddenError('not your enrollment')
        if payload.status is not models.EnrollmentStatus.DROPPED:
            raise ForbiddenError('students may only drop enrollments')
    enrollment = services.EnrollmentService(db).set_status(enrollment_id, payload.status, payload.grade)
    course = services.QueryService(db).get_course(enrollment.course_code)
    return {
        'success': True,
        'message': f'Enrollment {enrollment.status.value}',
        'enrollment': services.enrollment_dict(enrollment),
        'course': services.course_dict(course),
    }


@router.get("/enrollments")
def list_enrollments(db: Database = Depends(get_db), user: models.User = Depends(get_admin_user)):
    enrollments = services.QueryService(db).list_enrollments()
    return {'success': True, 'count': len(enrollments), 'enrollments': enrollments}


@router.get("/enrollments/student")
def student_enrollments(
    student_id: str = Query(alias="id", min_length=1, max_length=32),
    db: Database = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    """List one student's enrollments; students may only ask about themselves."""
    if not user.is_admin and student_id != _own_student_id(user):
        raise ForbiddenError('students may only view their own enrollments')
    enrollments = services.QueryService(db).list_student_enrollments(student_id)
    return {'success': True, 'count': len(enrollments), 'enrollments': enrollments}


@router.get("/enrollments/my-courses")
def my_courses(db: Database = Depends(get_db), user: models.User = Depends(get_current_user)):
    enrollments = services.QueryService(db).list_student_enrollments(_own_student_id(user))
    return {'success': True, 'count': len(enrollments), 'enrollments': enrollments}


# -------------------------------------------------------------------- factory

def _error_response(status_code: int, message: str, code: str, headers: Optional[dict] = None, **extra):
    content = {'success': False, 'message': message, 'code': code}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    def handle_app_error(request: Request, exc: AppError):
        headers = None
        if isinstance(exc, RateLimitedError):
            headers = {'Retry-After': str(exc.retry_after)}
        elif isinstance(exc, LockTimeoutError):
            headers = {'Retry-After': '1'}
        level = logging.ERROR if exc.status_code >= 500 else logging.INFO
        logger.log(level, "request_error %s", json.dumps({
            'request_id': getattr(request.state, 'request_id', ''),
            'path': request.url.path,
            'status_code': exc.status_code,
            'code': exc.code,
            'message': exc.message,
        }, ensure_ascii=True))
        return _error_response(exc.status_code, exc.message, exc.code, headers)

    @app.exception_handler(RequestValidationError)
    def handle_validation_error(request: Request, exc: RequestValidationError):
        errors = [{'loc': [str(part) for part in err.get('loc', ())], 'msg': err.get('msg', '')}
                  for err in exc.errors()]
        return _error_response(400, 'invalid request', ValidationError.code, errors=errors)

    @app.exception_handler(StarletteHTTPException)
    def handle_http_error(request: Request, exc: StarletteHTTPException):
        return _error_response(exc.status_code, str(exc.detail), 'HTTP_ERROR', getattr(exc, 'headers', None))

    @app.exception_handler(Exception)
    def handle_unexpected(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return _error_response(500, 'internal server error', 'INTERNAL_ERROR')


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application around an explicitly constructed `Database`.

    The schema initializer runs in the lifespan hook; if it fails the
    application does not start.
    """
    settings = settings or Settings()
    if not logging.getLogger().handlers:
        logging.basicConfig(level=settings.LOG_LEVEL)
    db = Database(settings.DATABASE_URL, lock_timeout=settings.LOCK_TIMEOUT_SECONDS)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            initialize(db, settings)
        except StorageError:
            logger.critical("startup aborted: database could not be initialized")
            raise
        yield
        db.dispose()

    app = FastAPI(title="Course Management API", version=API_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db
    app.state.login_throttle = LoginThrottle(settings.LOGIN_RATE_LIMIT_PER_MIN, window_seconds=60)

    if settings.ALLOW_DEV_CORS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
        request.state.request_id = req_id
        started = time.perf_counter()
        response: Response = await call_next(request)
        response.headers["X-Request-ID"] = req_id
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.info(
            "request_done %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": response.status_code,
                    "duration_ms": elapsed_ms,
                    "client": request.client.host if request.client else "unknown",
                },
                ensure_ascii=True,
            ),
        )
        return response

    _install_error_handlers(app)
    app.include_router(router)
    return app


app = create_app()
