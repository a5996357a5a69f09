from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from salesdesk.core.config import get_settings
from salesdesk.core.context import get_request_context


@dataclass
class AuthUser:
    """Authenticated subject as issued by the external identity layer.

    Only ``sub`` is trusted here; the CRM role is always read from the
    actor table so a stale token cannot carry an outdated role.
    """

    sub: str


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous")

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub="anonymous")

    subject = str(payload.get("sub", "anonymous"))
    context = get_request_context(request)
    if context is not None:
        context.user_id = subject
    return AuthUser(sub=subject)
