from datetime import datetime

import httpx
import structlog

from usagewatch.errors import AuthError, HttpError, InvalidResponse
from usagewatch.models import LIMIT_FIELDS, REQUIRED_LIMITS, UsageLimit, UsageSnapshot
from usagewatch.provider.base import FetchResult

logger = structlog.get_logger()

CLAUDE_BASE_URL = "https://claude.ai/api/organizations"

CLIENT_PLATFORM = "web_claude_ai"

SESSION_COOKIE = "sessionKey"

# fractional seconds first, the server sends both forms
_TIMESTAMP_FORMATS: "tuple[str, ...]" = (
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
)


def parse_timestamp(value: "str") -> "datetime":
    """
    parses an ISO-8601 timestamp with or without fractional seconds.
    Raises InvalidResponse when neither form matches.
    """
    for fmt in _TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    raise InvalidResponse(f"cannot decode date: {value!r}")


def parse_limit(data: "object", name: "str") -> "UsageLimit":
    if not isinstance(data, dict):
        raise InvalidResponse(f"{name}: expected an object")

    utilization = data.get("utilization")
    if isinstance(utilization, bool) or not isinstance(utilization, (int, float)):
        raise InvalidResponse(f"{name}: utilization is not a number")

    resets_at = data.get("resets_at")
    if resets_at is not None and not isinstance(resets_at, str):
        raise InvalidResponse(f"{name}: resets_at is not a string")

    return UsageLimit(
        utilization=float(utilization),
        resets_at=parse_timestamp(resets_at) if resets_at is not None else None,
    )


def parse_snapshot(data: "object") -> "UsageSnapshot":
    """
    builds a UsageSnapshot from the decoded JSON body. The session and
    weekly windows are required, every other window may be missing or
    null.
    """
    if not isinstance(data, dict):
        raise InvalidResponse("usage response is not an object")

    limits: "dict[str, UsageLimit | None]" = {}
    for name in LIMIT_FIELDS:
        raw = data.get(name)
        if raw is None:
            if name in REQUIRED_LIMITS:
                raise InvalidResponse(f"missing required field {name}")
            limits[name] = None
            continue
        limits[name] = parse_limit(raw, name)

    return UsageSnapshot(**limits)


def parse_rotated_token(set_cookie_headers: "list[str]") -> "str | None":
    """
    scans Set-Cookie headers for a new session key.
    """
    prefix = f"{SESSION_COOKIE}="
    for header in set_cookie_headers:
        for part in header.split(";"):
            part = part.strip()
            if part.startswith(prefix):
                value = part[len(prefix) :]
                if value:
                    return value
    return None


class ClaudeUsageFetcher:
    """
    ClaudeUsageFetcher implements the UsageFetcher protocol against the
    claude.ai usage endpoint. It keeps no state between calls besides
    the HTTP connection pool; credentials are passed on every call so a
    rotated session key is picked up immediately.
    """

    def __init__(
        self,
        base_url: "str" = CLAUDE_BASE_URL,
        timeout: "float" = 30.0,
        client: "httpx.AsyncClient | None" = None,
    ) -> "None":
        self._base_url = base_url.rstrip("/")
        self._client: "httpx.AsyncClient" = client or httpx.AsyncClient(
            timeout=timeout,
            headers={
                "accept": "*/*",
                "content-type": "application/json",
                "anthropic-client-platform": CLIENT_PLATFORM,
            },
        )

    async def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        await self._client.aclose()

    def usage_url(self, org_id: "str") -> "str":
        return f"{self._base_url}/{org_id}/usage"

    async def fetch_usage(
        self,
        session_token: "str",
        org_id: "str",
    ) -> "FetchResult":
        url = self.usage_url(org_id)
        logger.debug("claude_fetch_usage", url=url)

        resp = await self._client.get(
            url,
            headers={"Cookie": f"{SESSION_COOKIE}={session_token}"},
        )

        if resp.status_code in (401, 403):
            raise AuthError(resp.status_code)
        if not resp.is_success:
            raise HttpError(resp.status_code)

        try:
            data = resp.json()
        except ValueError as e:
            raise InvalidResponse("usage response is not valid JSON") from e

        snapshot = parse_snapshot(data)
        rotated = parse_rotated_token(resp.headers.get_list("set-cookie"))
        if rotated is not None:
            logger.debug("claude_session_rotated")

        return FetchResult(snapshot=snapshot, rotated_token=rotated)
