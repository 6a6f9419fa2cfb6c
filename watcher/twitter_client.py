"""
X API Client - v2 REST and filtered stream access.

This module wraps the three X API v2 surfaces the bridge needs:

    GET  /2/users/by                      username -> user id lookup (<= 100)
    GET  /2/users                         user id -> username lookup (<= 100)
    GET  /2/tweets/search/stream/rules    current stream rules
    POST /2/tweets/search/stream/rules    add / delete stream rules
    GET  /2/tweets/search/stream          newline delimited JSON stream

Configuration:
    TWITTER_BEARER_TOKEN: App-only bearer token
    TWITTER_API_URL: API base (default https://api.twitter.com/2)

Usage:
    client = TwitterClient(bearer_token=settings.twitter_bearer_token)
    users = await client.lookup_users(["jack", "x"])
    await client.sync_rules(["from:12 -is:retweet"])
    response = await client.open_stream()
    async for line in response.aiter_lines():
        ...
"""

import logging
from typing import Optional

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
    before_sleep_log,
)

from watcher.errors import StreamOpenError, UpstreamError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.twitter.com/2"
# Per-call limit of the users/by endpoint
LOOKUP_BATCH_SIZE = 100
# Tag attached to every rule this bridge owns
RULE_TAG = "twitter-watcher"

STREAM_FIELDS = {
    "tweet.fields": "author_id,created_at,lang,referenced_tweets,in_reply_to_user_id,entities",
    "expansions": "author_id",
    "user.fields": "username",
}


def is_retryable_error(e: BaseException) -> bool:
    """Check if exception is retryable (Connection, Timeout, 429, 5xx)."""
    if isinstance(e, (httpx.ConnectError, httpx.TimeoutException)):
        return True
    if isinstance(e, UpstreamError) and e.status_code is not None:
        return e.status_code == 429 or e.status_code >= 500
    return False


class TwitterClient:
    """
    Async X API v2 client using an app-only bearer token.

    All REST calls retry transient failures with exponential backoff.
    Authentication and validation errors surface as ``UpstreamError``.
    """

    def __init__(
        self,
        bearer_token: str,
        base_url: str = DEFAULT_API_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
        stream_read_timeout: float = 90.0,
    ) -> None:
        """
        Initialize the X API client.

        Args:
            bearer_token: App-only bearer token.
            base_url: API base URL including the ``/2`` version prefix.
            transport: Optional httpx transport (used by tests).
            timeout: Timeout for REST calls in seconds.
            stream_read_timeout: Max silence on the stream before it is
                considered dead. X sends keep-alive newlines every 20s.
        """
        self.base_url = base_url.rstrip("/")
        self.stream_read_timeout = stream_read_timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {bearer_token}"},
            timeout=timeout,
            transport=transport,
        )
        logger.info(f"X API client initialized: {self.base_url}")

    async def close(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _check(response: httpx.Response, action: str) -> dict:
        if response.status_code >= 400:
            raise UpstreamError(
                f"{action} failed: HTTP {response.status_code} {response.text[:200]}",
                status_code=response.status_code,
            )
        return response.json()

    # =========================================================================
    # Identity lookup
    # =========================================================================

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception(is_retryable_error),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def lookup_users(self, names: list[str]) -> list[tuple[int, str]]:
        """
        Look up user ids for up to 100 screen names.

        Args:
            names: Screen names without "@".

        Returns:
            List of (user id, current screen name). Names that do not exist
            are omitted.
        """
        if not names:
            return []
        if len(names) > LOOKUP_BATCH_SIZE:
            raise ValueError(f"At most {LOOKUP_BATCH_SIZE} names per lookup")

        response = await self._client.get(
            "/users/by",
            params={"usernames": ",".join(names), "user.fields": "username"},
        )
        payload = self._check(response, "User lookup")

        for error in payload.get("errors") or []:
            logger.debug(f"Lookup error for {error.get('value')}: {error.get('detail')}")

        return [
            (int(user["id"]), user["username"])
            for user in payload.get("data") or []
        ]

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception(is_retryable_error),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def lookup_ids(self, user_ids: list[int]) -> list[tuple[int, str]]:
        """
        Look up current screen names for up to 100 user ids.

        Returns:
            List of (user id, current screen name). Suspended or deleted
            users are omitted.
        """
        if not user_ids:
            return []
        if len(user_ids) > LOOKUP_BATCH_SIZE:
            raise ValueError(f"At most {LOOKUP_BATCH_SIZE} ids per lookup")

        response = await self._client.get(
            "/users",
            params={"ids": ",".join(str(i) for i in user_ids), "user.fields": "username"},
        )
        payload = self._check(response, "User id lookup")
        return [
            (int(user["id"]), user["username"])
            for user in payload.get("data") or []
        ]

    # =========================================================================
    # Stream rules
    # =========================================================================

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception(is_retryable_error),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def get_rules(self) -> list[dict]:
        """Return the currently active stream rules."""
        response = await self._client.get("/tweets/search/stream/rules")
        return self._check(response, "Get rules").get("data") or []

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception(is_retryable_error),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _post_rules(self, body: dict) -> dict:
        response = await self._client.post("/tweets/search/stream/rules", json=body)
        payload = self._check(response, "Update rules")
        errors = payload.get("errors") or []
        if errors:
            raise UpstreamError(f"Rule update rejected: {errors}")
        return payload

    async def sync_rules(self, values: list[str]) -> None:
        """
        Make the active rule set equal to ``values``.

        Stale rules are deleted, missing rules are added, rules already
        present are left untouched.
        """
        current = await self.get_rules()
        current_values = {rule.get("value"): rule.get("id") for rule in current}
        desired = set(values)

        to_delete = [rid for value, rid in current_values.items() if value not in desired]
        if to_delete:
            await self._post_rules({"delete": {"ids": to_delete}})
            logger.debug(f"Deleted {len(to_delete)} stale stream rule(s)")

        missing = [v for v in values if v not in current_values]
        if missing:
            await self._post_rules({"add": [{"value": v, "tag": RULE_TAG} for v in missing]})
            logger.debug(f"Added {len(missing)} stream rule(s)")

    # =========================================================================
    # Filtered stream
    # =========================================================================

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception(is_retryable_error),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def open_stream(self) -> httpx.Response:
        """
        Connect to the filtered stream.

        Returns:
            An open streaming response. The caller must ``aclose()`` it.

        Raises:
            StreamOpenError: The stream endpoint refused the connection.
        """
        request = self._client.build_request(
            "GET",
            "/tweets/search/stream",
            params=STREAM_FIELDS,
            timeout=httpx.Timeout(30.0, read=self.stream_read_timeout),
        )
        response = await self._client.send(request, stream=True)
        if response.status_code != 200:
            body = (await response.aread()).decode("utf-8", "replace")
            await response.aclose()
            raise StreamOpenError(
                f"Stream connect failed: HTTP {response.status_code} {body[:200]}",
                status_code=response.status_code,
            )
        return response
