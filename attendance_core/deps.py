from fastapi import Request

from attendance_core.errors import ApiError
from attendance_core.services.caches import AttendanceCaches


def get_caches(request: Request) -> AttendanceCaches:
    caches = getattr(request.app.state, "caches", None)
    if caches is None:
        raise ApiError(status_code=503, code="CACHES_NOT_READY", message="Service is starting up.")
    return caches


def get_admin_actor(request: Request) -> str:
    # Authentication happens upstream; the gateway forwards the admin identity.
    actor_id = (request.headers.get("X-Admin-Id") or "").strip()
    if not actor_id:
        raise ApiError(status_code=401, code="ADMIN_IDENTITY_REQUIRED", message="Missing X-Admin-Id header.")
    request.state.actor = "admin"
    request.state.actor_id = actor_id
    return actor_id
