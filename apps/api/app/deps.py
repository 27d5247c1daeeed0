"""FastAPI dependencies for the outbound clients. Tests swap these via dependency_overrides."""
from typing import Any, Dict

from fastapi import Depends, Request

from apps.api.app.auth import CurrentUser, get_current_user
from apps.api.app.config import settings
from apps.api.app.cooldown import SyncCooldown
from apps.api.app.credentials import CredentialCipher
from apps.api.app.lifecycle import ReplyPoster
from apps.api.app.oauth import GoogleOAuthClient
from jobs.analyze.llm_gateway import ChatGateway
from jobs.ingest.sources.google_business import GoogleBusinessClient


def get_oauth_client() -> GoogleOAuthClient:
    return GoogleOAuthClient(settings)


def get_review_client() -> GoogleBusinessClient:
    return GoogleBusinessClient(settings.google_reviews_base_url, timeout=settings.http_timeout_seconds)


def get_cipher() -> CredentialCipher:
    return CredentialCipher(settings.credentials_key)


def get_gateway() -> ChatGateway:
    return ChatGateway(
        settings.ai_api_url,
        settings.ai_api_key,
        settings.ai_model,
        timeout=settings.ai_timeout_seconds,
    )


def get_reply_poster(
    review_client: GoogleBusinessClient = Depends(get_review_client),
    oauth_client: GoogleOAuthClient = Depends(get_oauth_client),
    cipher: CredentialCipher = Depends(get_cipher),
) -> ReplyPoster:
    return ReplyPoster(review_client=review_client, oauth_client=oauth_client, cipher=cipher)


def prune_cooldowns(registry: Dict[Any, SyncCooldown]) -> None:
    """Forget users whose cooldowns have all expired."""
    for user_id, cooldown in list(registry.items()):
        cooldown.prune()
        if not len(cooldown):
            del registry[user_id]


def get_sync_cooldown(request: Request, user: CurrentUser = Depends(get_current_user)) -> SyncCooldown:
    """The caller's own cooldown, never shared between users. Idle ones are dropped from the registry."""
    registry = getattr(request.app.state, "sync_cooldowns", None)
    if registry is None:
        registry = request.app.state.sync_cooldowns = {}
    prune_cooldowns(registry)
    cooldown = registry.get(user.id)
    if cooldown is None:
        cooldown = registry[user.id] = SyncCooldown(settings.sync_cooldown_seconds)
    return cooldown
