import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import HTMLResponse
from jinja2 import Environment, FileSystemLoader, select_autoescape
from sqlalchemy.orm import Session

from apps.api.app.config import settings
from apps.api.app.db import get_db
from apps.api.app.deps import get_oauth_client
from apps.api.app.oauth import GoogleOAuthClient, OAuthOutcome, complete_authorization

logger = logging.getLogger(__name__)

router = APIRouter()

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"

_templates = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
)


def render_outcome(outcome: OAuthOutcome) -> str:
    """HTML for the popup: tell the opener how it went, then close."""
    payload = {
        "type": "auth-success" if outcome.success else "auth-error",
        "service": outcome.service,
        "source": outcome.source_name,
        "message": outcome.message,
    }
    if not outcome.success:
        payload["kind"] = outcome.kind
    return _templates.get_template("oauth_complete.html").render(
        title="Connected" if outcome.success else "Connection failed",
        success=outcome.success,
        message=outcome.message,
        payload=payload,
        app_origin=settings.app_origin,
        close_delay_ms=1000 if outcome.success else 3000,
    )


@router.get("/oauth/google/callback", response_class=HTMLResponse)
def google_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    client: GoogleOAuthClient = Depends(get_oauth_client),
    db: Session = Depends(get_db),
):
    outcome = complete_authorization(db, client, code=code, state=state, error=error)
    if not outcome.success:
        logger.warning("OAuth callback failed: %s", outcome.kind)
    return HTMLResponse(render_outcome(outcome), status_code=200 if outcome.success else 400)
