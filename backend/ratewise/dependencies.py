"""Shared router dependencies: result unwrapping and the per-token rate limit."""

from fastapi import Header, HTTPException

from ratewise.services.rate_limiter import rate_limiter
from ratewise.services.results import CoreError, Result, ResultKind

STATUS_BY_KIND = {
    ResultKind.VALIDATION_ERROR: 400,
    ResultKind.NOT_FOUND: 404,
    ResultKind.CONFLICT: 409,
    ResultKind.RATE_LIMITED: 429,
    ResultKind.UNAVAILABLE: 503,
    ResultKind.INTERNAL: 500,
}


def http_error(result: Result) -> HTTPException:
    detail = {"kind": result.kind.value, "error": result.error, "code": result.code.value if result.code else None}
    if result.details:
        detail["details"] = result.details
    headers = None
    retry_after = result.details.get("retry_after")
    if result.kind == ResultKind.RATE_LIMITED and retry_after is not None:
        headers = {"Retry-After": str(retry_after)}
    return HTTPException(status_code=STATUS_BY_KIND.get(result.kind, 500), detail=detail, headers=headers)


def unwrap(result: Result):
    """Return the value of an ok result, raise the matching HTTPException otherwise."""
    if not result.is_ok:
        raise http_error(result)
    return result.value


def raise_core(exc: CoreError):
    raise http_error(Result.from_error(exc)) from exc


async def rate_limit(x_api_token: str | None = Header(default=None)) -> str | None:
    """Count the request against the caller's API token; anonymous calls share one bucket."""
    token = x_api_token or "anonymous"
    try:
        await rate_limiter.hit(token)
    except CoreError as e:
        raise_core(e)
    return x_api_token
