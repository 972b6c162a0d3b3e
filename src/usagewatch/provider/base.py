from typing import NamedTuple, Protocol

from usagewatch.models import UsageSnapshot


class FetchResult(NamedTuple):
    snapshot: "UsageSnapshot"
    # set when the server rotated the session key on this call
    rotated_token: "str | None" = None


class UsageFetcher(Protocol):
    """
    UsageFetcher performs one usage request with the given credentials.

    Implementations raise AuthError when the credentials are rejected,
    HttpError for other unexpected statuses and InvalidResponse when
    the body cannot be decoded. Transport errors propagate as they are.
    """

    async def fetch_usage(
        self,
        session_token: "str",
        org_id: "str",
    ) -> "FetchResult": ...

    async def close(self) -> "None": ...
