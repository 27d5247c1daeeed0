import logging
from typing import Any, Dict, Optional

import requests

from apps.api.app.errors import ProviderError

logger = logging.getLogger(__name__)


def send(session: requests.Session, method: str, url: str, timeout: float, **kwargs) -> requests.Response:
    """Perform one HTTP round-trip; transport failures come back as ProviderError."""
    try:
        return session.request(method, url, timeout=timeout, **kwargs)
    except requests.Timeout as e:
        logger.warning("%s %s timed out", method, url)
        raise ProviderError("The provider did not respond in time") from e
    except requests.RequestException as e:
        logger.warning("%s %s failed: %s", method, url, e)
        raise ProviderError() from e


def json_body(response: requests.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError as e:
        raise ProviderError("The provider returned an unreadable response") from e
    if not isinstance(data, dict):
        raise ProviderError("The provider returned an unexpected response")
    return data


def retry_after(response: requests.Response) -> Optional[int]:
    value = (response.headers or {}).get("Retry-After")
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def error_excerpt(response: requests.Response, limit: int = 300) -> str:
    try:
        return (response.text or "")[:limit]
    except Exception:
        return ""
