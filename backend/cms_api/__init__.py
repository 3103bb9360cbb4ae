"""Course management backend.

This package exposes the service, repository and model modules used by
the FastAPI application in `cms_api.main`. Enrollment consistency lives in
`cms_api.services.EnrollmentService`; the other modules are the plumbing
around it.
"""
