import logging
from pathlib import Path
from typing import Any, Dict, Optional

import requests
from jinja2 import Template

from apps.api.app.errors import ConfigurationError, ProviderError, QuotaExhausted, RateLimited
from apps.api.app.http_client import send, json_body, retry_after, error_excerpt

logger = logging.getLogger(__name__)

PROMPTS_DIR = Path(__file__).parent / "prompts"


def render_prompt(template_path: Path, context: Dict[str, Any]) -> str:
    tmpl = Template(template_path.read_text(encoding="utf-8"))
    return tmpl.render(**context).strip()


def _extract_content(data: Dict[str, Any]) -> str:
    choices = data.get("choices") or []
    if not choices:
        return ""
    message = choices[0].get("message") or {}
    return (message.get("content") or "").strip()


class ChatGateway:
    """
    OpenAI-compatible chat completions endpoint.

    429 and 402 are surfaced as RateLimited / QuotaExhausted so callers can
    tell "wait a bit" from "top up the account".
    """

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str],
        model: str,
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.session = session or requests.Session()

    def complete(self, system: str, user: str, max_tokens: Optional[int] = None, temperature: Optional[float] = None) -> str:
        if not self.api_key:
            logger.error("AI_API_KEY not configured")
            raise ConfigurationError("AI service not configured")

        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        }
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if temperature is not None:
            payload["temperature"] = temperature

        r = send(
            self.session,
            "POST",
            self.api_url,
            self.timeout,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            json=payload,
        )

        if r.status_code == 429:
            raise RateLimited(retry_after=retry_after(r))
        if r.status_code == 402:
            raise QuotaExhausted()
        if not 200 <= r.status_code < 300:
            logger.error("AI gateway error: %s %s", r.status_code, error_excerpt(r))
            raise ProviderError("AI service request failed")

        return _extract_content(json_body(r))
