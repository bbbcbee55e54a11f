import hmac

from fastapi import HTTPException, Request


def get_bearer_token(request: Request) -> str | None:
    """Extract the Bearer token from the Authorization header, if any."""
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth[len("Bearer "):].strip()


def require_admin(request: Request) -> str:
    """Guard for operational endpoints.

    The expected token comes from ``Settings.admin_token`` (``ADMIN_TOKEN``).
    With no token configured every admin request is refused.

    Raises:
        HTTPException: 401 if the token is missing, wrong, or not configured
    """
    expected = request.app.state.resilience.settings.admin_token.strip()
    token = get_bearer_token(request) or ""

    # Compare even when unconfigured so timing does not reveal which case failed
    matches = hmac.compare_digest(token.encode(), expected.encode())
    if not expected or not matches:
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")

    return "admin"
