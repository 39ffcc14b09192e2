from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import requests

from core.errors import PermanentError, RateLimited, TransientError
from core.models import Block, FeedRecord


def _retry_after(resp: requests.Response) -> Optional[float]:
    raw = resp.headers.get("Retry-After")
    try:
        return float(raw) if raw else None
    except ValueError:
        return None


def raise_for_feed_status(resp: requests.Response, provider: str) -> None:
    """Map HTTP status codes onto the feed error taxonomy."""
    code = resp.status_code
    if code < 400:
        return
    body = (resp.text or "")[:200]
    if code == 429:
        raise RateLimited(f"{provider}: 429 {body}", retry_after=_retry_after(resp))
    if code >= 500 or code in (408, 425):
        raise TransientError(f"{provider}: {code} {body}")
    raise PermanentError(f"{provider}: {code} {body}")


def to_float(v: Any) -> Optional[float]:
    if v is None or v == "":
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


class ActivityFeedProvider:
    """
    An external activity-history service.

    `query` returns the feed's records for one address over an opaque range;
    an empty list means "nothing yet", not failure.
    """

    name = "feed"
    range_kind = "block"                 # "block" | "time"

    def __init__(self, timeout: float = 20.0, session: Optional[requests.Session] = None):
        self.timeout = timeout
        # no retry adapter: RetryPolicy owns retries for feed lookups
        self.session = session or requests.Session()

    def window_for(self, block: Block) -> Tuple[int, int]:
        return (block.number, block.number)

    def query(self, address: str, lower: int, upper: int) -> List[FeedRecord]:
        raise NotImplementedError

    def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            r = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientError(f"{self.name}: {e}") from e
        except requests.RequestException as e:
            raise PermanentError(f"{self.name}: {e}") from e
        raise_for_feed_status(r, self.name)
        try:
            return r.json()
        except ValueError as e:
            raise TransientError(f"{self.name}: bad JSON ({e})") from e

    def _get_json(self, url: str, params: Dict[str, Any], headers: Dict[str, str]) -> Any:
        return self._request("GET", url, params=params, headers=headers)

    def close(self) -> None:
        self.session.close()
