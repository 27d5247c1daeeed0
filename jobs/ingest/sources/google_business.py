import logging
from typing import Any, Dict, Iterator, List, Optional

import requests

from apps.api.app.errors import ProviderError, RateLimited, TokenExpired
from apps.api.app.http_client import send, json_body, retry_after, error_excerpt

logger = logging.getLogger(__name__)


class GoogleBusinessClient:
    """
    Google Business Profile reviews API (v4).
    Listing pages through nextPageToken; replies are a PUT on the review.
    """

    def __init__(
        self,
        base_url: str = "https://mybusiness.googleapis.com/v4",
        timeout: float = 15,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @staticmethod
    def _headers(token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    @staticmethod
    def _check(r: requests.Response, action: str) -> None:
        if 200 <= r.status_code < 300:
            return
        logger.error("Google API error while %s: %s %s", action, r.status_code, error_excerpt(r))
        if r.status_code == 429:
            raise RateLimited(retry_after=retry_after(r))
        if r.status_code == 401:
            raise TokenExpired()
        raise ProviderError(f"Failed {action} on Google")

    def iter_review_pages(
        self,
        token: str,
        account_id: str,
        location_id: str,
        page_size: int = 50,
        max_pages: int = 10,
    ) -> Iterator[List[Dict[str, Any]]]:
        """Yield one list of raw reviews per page, newest pages first."""
        url = f"{self.base_url}/accounts/{account_id}/locations/{location_id}/reviews"
        page_token: Optional[str] = None

        for _ in range(max_pages):
            params: Dict[str, Any] = {"pageSize": page_size}
            if page_token:
                params["pageToken"] = page_token

            r = send(self.session, "GET", url, self.timeout, headers=self._headers(token), params=params)
            self._check(r, "fetching reviews")
            data = json_body(r)

            rows = data.get("reviews") or []
            if rows:
                yield rows

            page_token = data.get("nextPageToken")
            if not page_token:
                break

    def update_reply(self, token: str, account_id: str, location_id: str, review_id: str, text: str) -> Dict[str, Any]:
        url = f"{self.base_url}/accounts/{account_id}/locations/{location_id}/reviews/{review_id}/reply"
        r = send(self.session, "PUT", url, self.timeout, headers=self._headers(token), json={"comment": text})
        self._check(r, "posting the reply")
        try:
            return r.json() or {}
        except ValueError:
            return {}
