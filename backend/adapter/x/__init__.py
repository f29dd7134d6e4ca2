"""
X (Twitter) API Adapter for X Digest.

Fetches the authenticated user's home timeline as Item objects.
Uses the Twitter API v2 reverse chronological timeline endpoint.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, List, Optional

import requests

from ..errors import TransientIOError
from ..models import Item, newest_first
from ..rate_limiter import RateLimiter, X_TIMELINE_LIMIT, X_USER_LOOKUP_LIMIT

if TYPE_CHECKING:
    from monitoring import SystemMonitor

logger = logging.getLogger(__name__)


class XAdapterError(TransientIOError):
    """Base exception for XAdapter errors."""
    pass


class XAuthenticationError(XAdapterError):
    """Raised when authentication fails."""
    pass


class XRateLimitError(XAdapterError):
    """Raised when rate limit is exceeded."""
    def __init__(self, message: str, reset_time: int = None, remaining: int = None, limit: int = None):
        super().__init__(message)
        self.reset_time = reset_time  # Unix timestamp when limit resets
        self.remaining = remaining    # Remaining requests in window
        self.limit = limit            # Total requests allowed in window


class XAPIError(XAdapterError):
    """Raised when API returns an error."""
    def __init__(self, message: str, status_code: int = None, response_text: str = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_text = response_text


class XAdapter:
    """
    Adapter for the X (Twitter) API v2 home timeline.

    Acts as the feed source for SyncEngine: ``fetch_since(watermark)`` returns
    posts with ids strictly greater than the watermark, newest first.

    Usage:
        adapter = XAdapter(access_token="...", user_id="12345")
        items = adapter.fetch_since(1790000000000000000)
    """

    BASE_URL = "https://api.x.com/2"
    REQUEST_TIMEOUT = 15

    DEFAULT_TIMELINE_LIMIT = X_TIMELINE_LIMIT
    DEFAULT_USER_LOOKUP_LIMIT = X_USER_LOOKUP_LIMIT

    def __init__(
        self,
        access_token: Optional[str] = None,
        user_id: Optional[str] = None,
        page_size: int = 100,
        rate_limiter: Optional[RateLimiter] = None,
        skip_rate_limit: bool = False,
        monitor: Optional["SystemMonitor"] = None,
    ):
        """
        Initialize the X adapter.

        Args:
            access_token: OAuth 2.0 user-context access token
            user_id: Numeric id of the timeline owner (looked up via /users/me when omitted)
            page_size: Posts requested per call (5-100)
            rate_limiter: Optional shared rate limiter
            skip_rate_limit: If True, skip internal rate limiting (X API still enforces its own)
            monitor: Optional SystemMonitor receiving call latencies
        """
        self._skip_rate_limit = skip_rate_limit
        self.access_token = access_token
        self.user_id = user_id
        self.page_size = max(5, min(100, page_size))
        self.monitor = monitor

        if not self.access_token:
            logger.warning("No X access token provided - adapter will fail on API calls")
            self._is_configured = False
        else:
            self._is_configured = True

        self.headers = {
            "Authorization": f"Bearer {self.access_token}" if self.access_token else "",
        }

        self.rate_limiter = rate_limiter or RateLimiter()
        if "x_timeline" not in self.rate_limiter.configs:
            self.rate_limiter.configure_limit("x_timeline", self.DEFAULT_TIMELINE_LIMIT)
        if "x_user_lookup" not in self.rate_limiter.configs:
            self.rate_limiter.configure_limit("x_user_lookup", self.DEFAULT_USER_LOOKUP_LIMIT)

        # Track rate limit status from API responses
        self._rate_limit_status = {
            "limit": None,
            "remaining": None,
            "reset_time": None,
            "last_updated": None
        }

    @property
    def is_configured(self) -> bool:
        """Check if adapter is properly configured with credentials."""
        return self._is_configured

    def get_rate_limit_status(self) -> dict:
        """
        Get the current rate limit status from the last API response.

        Returns:
            Dict with limit, remaining, reset_time, and seconds_until_reset
        """
        status = self._rate_limit_status.copy()

        if status["reset_time"]:
            now = datetime.now(timezone.utc)
            reset_dt = datetime.fromtimestamp(status["reset_time"], tz=timezone.utc)
            status["seconds_until_reset"] = max(0, int((reset_dt - now).total_seconds()))
            status["reset_time_str"] = reset_dt.strftime("%H:%M:%S UTC")
        else:
            status["seconds_until_reset"] = None
            status["reset_time_str"] = None

        return status

    def _update_rate_limit_status(self, response) -> None:
        """Update rate limit status from response headers."""
        headers = response.headers

        reset = headers.get("x-rate-limit-reset")
        remaining = headers.get("x-rate-limit-remaining")
        limit = headers.get("x-rate-limit-limit")

        if reset:
            self._rate_limit_status["reset_time"] = int(reset)
        if remaining:
            self._rate_limit_status["remaining"] = int(remaining)
        if limit:
            self._rate_limit_status["limit"] = int(limit)

        self._rate_limit_status["last_updated"] = datetime.now(timezone.utc)

        if self._rate_limit_status["remaining"] is not None:
            remaining = self._rate_limit_status["remaining"]
            if remaining <= 5:
                logger.warning(f"X API rate limit nearly exhausted: {remaining} requests remaining")
            elif remaining <= 20:
                logger.info(f"X API rate limit: {remaining} requests remaining")

    def _parse_post_to_item(self, post: dict, users_map: dict) -> Item:
        """Convert a raw post from the API response to an Item."""
        user = users_map.get(post.get("author_id"), {})
        username = user.get("username", "unknown")

        # Long posts carry their untruncated body in note_tweet
        text = post.get("note_tweet", {}).get("text") or post.get("text", "")

        created_at = post.get("created_at")
        timestamp = datetime.fromisoformat(created_at.replace("Z", "+00:00")) if created_at else None

        return Item(
            id=int(post["id"]),
            author=username,
            text=text,
            created_at=timestamp
        )

    def _get(self, url: str, params: Optional[dict] = None) -> dict:
        """Issue a GET against the API and translate failures into adapter errors."""
        try:
            start_time_ms = time.time() * 1000
            response = requests.get(
                url,
                headers=self.headers,
                params=params,
                timeout=self.REQUEST_TIMEOUT
            )
            latency_ms = (time.time() * 1000) - start_time_ms

            # Always update rate limit status from headers (even on errors)
            self._update_rate_limit_status(response)

            if self.monitor:
                self.monitor.metrics.record_x_api_call(latency_ms, error=response.status_code >= 400)

            if response.status_code == 401:
                raise XAuthenticationError("Invalid or expired access token")
            elif response.status_code == 429:
                reset_time = response.headers.get("x-rate-limit-reset")
                remaining = response.headers.get("x-rate-limit-remaining")
                limit = response.headers.get("x-rate-limit-limit")
                raise XRateLimitError(
                    "X API rate limit exceeded",
                    reset_time=int(reset_time) if reset_time else None,
                    remaining=int(remaining) if remaining else None,
                    limit=int(limit) if limit else None
                )
            elif response.status_code >= 400:
                raise XAPIError(
                    f"X API error: {response.status_code}",
                    status_code=response.status_code,
                    response_text=response.text
                )

            return response.json()

        except requests.exceptions.Timeout:
            raise XAPIError("X API request timed out")
        except requests.exceptions.ConnectionError:
            raise XAPIError("Failed to connect to X API")
        except XAdapterError:
            raise
        except Exception as e:
            raise XAPIError(f"Unexpected error: {e}")

    def get_user_id(self) -> str:
        """
        Return the timeline owner's id, resolving it through /2/users/me once.

        Raises:
            XAuthenticationError: If not configured with an access token
            XAPIError: If the lookup fails or returns no user
        """
        if self.user_id:
            return self.user_id

        if not self._is_configured:
            raise XAuthenticationError("X adapter not configured - set X_ACCESS_TOKEN")

        if not self._skip_rate_limit:
            self.rate_limiter.wait_if_needed("x_user_lookup")

        data = self._get(f"{self.BASE_URL}/users/me")
        user = data.get("data") or {}
        if "id" not in user:
            raise XAPIError("X API returned no user for the access token")

        self.user_id = user["id"]
        logger.info(f"Resolved timeline owner @{user.get('username', '?')} ({self.user_id})")
        return self.user_id

    def fetch_since(self, since_id: int) -> List[Item]:
        """
        Fetch home timeline posts newer than ``since_id``.

        Args:
            since_id: Watermark; 0 means no prior items and fetches the latest page

        Returns:
            Items with id > since_id, newest first, at most ``page_size`` of them

        Raises:
            XAuthenticationError: If not configured or the token is rejected
            XRateLimitError: If rate limit exceeded
            XAPIError: If API returns an error
        """
        if not self._is_configured:
            raise XAuthenticationError("X adapter not configured - set X_ACCESS_TOKEN")

        user_id = self.get_user_id()

        if not self._skip_rate_limit:
            self.rate_limiter.wait_if_needed("x_timeline")

        params = {
            "max_results": self.page_size,
            "tweet.fields": "id,text,created_at,author_id,note_tweet",
            "expansions": "author_id",
            "user.fields": "username,name"
        }
        if since_id > 0:
            params["since_id"] = str(since_id)

        data = self._get(f"{self.BASE_URL}/users/{user_id}/timelines/reverse_chronological", params)

        if "data" not in data or not data["data"]:
            logger.info(f"No new posts since {since_id}")
            return []

        users_map = {}
        for user in data.get("includes", {}).get("users", []):
            users_map[user["id"]] = user

        items = [self._parse_post_to_item(post, users_map) for post in data["data"]]

        # The API filters by since_id already; keep the contract even if it slips
        items = newest_first(item for item in items if item.id > since_id)

        logger.info(f"{len(items)} new posts found since {since_id}")
        return items


__all__ = [
    "XAdapter",
    "XAdapterError",
    "XAuthenticationError",
    "XRateLimitError",
    "XAPIError",
    "Item",  # Re-export for convenience
]
