"""Pydantic request schemas used by the API.

Schemas keep API input shapes stable and reject malformed payloads before
they reach a service; FastAPI reports their failures as 400 responses.
"""

from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .models import EnrollmentStatus


def _strip(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be blank")
    return value


class LoginIn(BaseModel):
    """Payload for the login endpoint."""
    email: str = Field(max_length=100)
    password: str = Field(min_length=1)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        value = value.strip().lower()
        if "@" not in value or value.startswith("@") or value.endswith("@"):
            raise ValueError("invalid email address")
        return value


class RegisterIn(LoginIn):
    """Registration payload.

    `student_id` links the new identity to a student record, creating the
    record when it does not exist yet.
    """
    name: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=6)
    student_id: Optional[str] = Field(default=None, max_length=32)
    semester: Optional[int] = Field(default=None, ge=1)
    contact: Optional[str] = Field(default=None, max_length=100)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        return _strip(value)

    @field_validator("student_id")
    @classmethod
    def _strip_student_id(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _strip(value)


class StudentIn(BaseModel):
    id: str = Field(min_length=1, max_length=32)
    name: str = Field(min_length=1, max_length=100)
    semester: Optional[int] = Field(default=None, ge=1)
    contact: Optional[str] = Field(default=None, max_length=100)

    @field_validator("id", "name")
    @classmethod
    def _strip_text(cls, value: str) -> str:
        return _strip(value)


class CourseIn(BaseModel):
    """Course creation payload (admin only)."""
    code: str = Field(min_length=1, max_length=20)
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    semester: Optional[int] = Field(default=None, ge=1)
    credits: int = Field(default=3, ge=0)
    instructor: str = Field(min_length=1, max_length=100)
    capacity: int = Field(default=30, ge=0)

    @field_validator("code", "name", "instructor")
    @classmethod
    def _strip_text(cls, value: str) -> str:
        return _strip(value)


class EnrollIn(BaseModel):
    """Enrollment request.

    Students may omit `student_id`; it defaults to their own record.
    """
    course_code: str = Field(min_length=1, max_length=20)
    student_id: Optional[str] = Field(default=None, max_length=32)

    @field_validator("course_code")
    @classmethod
    def _strip_code(cls, value: str) -> str:
        return _strip(value)

    @field_validator("student_id")
    @classmethod
    def _strip_student_id(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _strip(value)


class StatusIn(BaseModel):
    status: EnrollmentStatus
    grade: Optional[str] = Field(default=None, min_length=1, max_length=5)
