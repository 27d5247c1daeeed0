from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Core
    database_url: str
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    # Caller identity and credential encryption
    jwt_secret: Optional[str] = None
    credentials_key: Optional[str] = None

    # Google OAuth / Business Profile
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    google_oauth_scope: str = "https://www.googleapis.com/auth/business.manage"
    google_auth_url: str = "https://accounts.google.com/o/oauth2/v2/auth"
    google_token_url: str = "https://oauth2.googleapis.com/token"
    google_accounts_url: str = "https://mybusinessaccountmanagement.googleapis.com/v1/accounts"
    google_reviews_base_url: str = "https://mybusiness.googleapis.com/v4"

    public_base_url: str = "http://localhost:8000"
    app_origin: str = "http://localhost:3000"
    oauth_state_ttl_seconds: int = 600
    token_refresh_skew_seconds: int = 60

    # AI gateway (OpenAI-compatible chat completions)
    ai_api_url: str = "https://openrouter.ai/api/v1/chat/completions"
    ai_api_key: Optional[str] = None
    ai_model: str = "google/gemini-2.5-flash"
    ai_timeout_seconds: int = 30

    http_timeout_seconds: int = 15
    sync_cooldown_seconds: int = 300
    review_page_size: int = 50
    review_max_pages: int = 10

    # Field caps
    max_review_chars: int = 10000
    max_response_chars: int = 4096
    max_reviewer_name_chars: int = 200

    # Ignore extra env vars so `.env` can have more keys
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    @property
    def oauth_redirect_uri(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/oauth/google/callback"

settings = Settings()
