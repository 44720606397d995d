"""
Configuration module - loads secrets from Google Secret Manager.
Falls back to environment variables for local development.
"""
import json
import os
import logging
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, model_validator, field_validator
from typing import List, Any

logger = logging.getLogger(__name__)


def get_secret_from_gcp(secret_id: str, project_id: Optional[str] = None) -> Optional[str]:
    """
    Fetch secret from Google Secret Manager.
    Returns None if not available (fallback to env vars).
    """
    project = project_id or os.environ.get("GCP_PROJECT_ID") or os.environ.get("GOOGLE_CLOUD_PROJECT")
    if not project:
        return None

    try:
        from google.cloud import secretmanager

        client = secretmanager.SecretManagerServiceClient()
        name = f"projects/{project}/secrets/{secret_id}/versions/latest"
        response = client.access_secret_version(request={"name": name})
        return response.payload.data.decode("UTF-8")
    except Exception as e:
        logger.debug(f"Could not fetch secret {secret_id} from Secret Manager: {e}")
        return None


class Settings(BaseSettings):
    """Application settings with Secret Manager integration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # GCP
    gcp_project_id: str = Field(default="", alias="GCP_PROJECT_ID")

    # Persistence
    store_backend: str = Field(default="memory", alias="STORE_BACKEND")
    supabase_url: str = Field(default="", alias="SUPABASE_URL")
    supabase_key: str = Field(default="", alias="SUPABASE_KEY")

    # Artifact storage
    storage_backend: str = Field(default="local", alias="STORAGE_BACKEND")
    artifact_dir: str = Field(default="./artifacts", alias="ARTIFACT_DIR")
    gcs_bucket: str = Field(default="", alias="GCS_BUCKET")
    gcs_signed_url_expiration_minutes: int = Field(default=10, alias="GCS_SIGNED_URL_EXPIRATION_MINUTES")

    # Resend (Email)
    resend_api_key: str = Field(default="", alias="RESEND_API_KEY")
    resend_from_email: str = Field(default="contracts@studiosign.local", alias="RESEND_FROM_EMAIL")
    studio_name: str = Field(default="Studio", alias="STUDIO_NAME")

    # App
    app_base_url: str = Field(default="http://localhost:8000", alias="APP_BASE_URL")
    public_url: str = Field(default="", alias="PUBLIC_URL")
    signing_token_salt: str = Field(default="", alias="SIGNING_TOKEN_SALT")
    otp_secret: str = Field(default="", alias="OTP_SECRET")
    admin_api_secret: str = Field(default="", alias="ADMIN_API_SECRET")

    # Magic links and sessions
    token_ttl_hours: int = Field(default=72, alias="TOKEN_TTL_HOURS")
    session_ttl_hours: int = Field(default=24, alias="SESSION_TTL_HOURS")
    session_extension_hours: int = Field(default=1, alias="SESSION_EXTENSION_HOURS")

    # OTP
    otp_length: int = Field(default=6, alias="OTP_LENGTH")
    otp_ttl_minutes: int = Field(
        default=10,
        alias="OTP_TTL_MINUTES",
        description="How long an emailed code stays valid (default 10 min)"
    )
    otp_max_attempts: int = Field(default=5, alias="OTP_MAX_ATTEMPTS")

    # Rate limiting
    otp_rate_limit_requests: int = Field(default=5, alias="OTP_RATE_LIMIT_REQUESTS")
    otp_rate_limit_window_seconds: int = Field(default=300, alias="OTP_RATE_LIMIT_WINDOW_SECONDS")

    # Rendering
    missing_variable_policy: str = Field(default="mark", alias="MISSING_VARIABLE_POLICY")

    # Background expiry sweep (0 = only lazy expiry on access)
    expiry_sweep_interval_seconds: int = Field(default=0, alias="EXPIRY_SWEEP_INTERVAL_SECONDS")

    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # CORS
    allowed_origins: List[str] = Field(default=[], alias="ALLOWED_ORIGINS")

    @field_validator("allowed_origins", mode='before')
    @classmethod
    def _parse_allowed_origins(cls, v: Any) -> List[str]:
        """Parse ALLOWED_ORIGINS from JSON list, CSV, semicolon-separated string, or list."""
        if v is None:
            return []
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            s = v.strip()
            if not s:
                return []
            if s.startswith("["):
                try:
                    return json.loads(s)
                except json.JSONDecodeError:
                    pass
            parts = [p.strip() for p in s.replace(",", ";").split(";")]
            return [p for p in parts if p]
        return []

    @field_validator("store_backend", "storage_backend", "missing_variable_policy")
    @classmethod
    def _normalize_choice(cls, v: str) -> str:
        return v.strip().lower()

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._load_secrets_from_gcp()

    def _load_secrets_from_gcp(self):
        """Override settings with values from Secret Manager if available."""
        if not self.gcp_project_id:
            return

        secret_mappings = {
            "supabase_url": "SUPABASE_URL",
            "supabase_key": "SUPABASE_KEY",
            "gcs_bucket": "GCS_BUCKET",
            "resend_api_key": "RESEND_API_KEY",
            "signing_token_salt": "SIGNING_TOKEN_SALT",
            "otp_secret": "OTP_SECRET",
            "admin_api_secret": "ADMIN_API_SECRET",
        }

        for attr, secret_id in secret_mappings.items():
            secret_value = get_secret_from_gcp(secret_id, self.gcp_project_id)
            if secret_value:
                setattr(self, attr, secret_value)
                logger.info(f"Loaded {secret_id} from Secret Manager")

    @model_validator(mode='after')
    def validate_environment(self) -> 'Settings':
        """Warn about configuration that is unsafe outside development."""
        if self.environment != "production":
            return self

        if not self.get_public_url().startswith("https://"):
            logger.warning(
                f"Configuration Warning: PUBLIC_URL ('{self.get_public_url()}') "
                f"does not start with 'https://' in production."
            )
        for name in ("signing_token_salt", "otp_secret", "admin_api_secret"):
            if not getattr(self, name):
                logger.error(f"CRITICAL: {name.upper()} is not set in production!")
        return self

    def get_public_url(self) -> str:
        """
        Base URL used in magic links and QR codes sent to recipients.
        Falls back to app_base_url if PUBLIC_URL is not set (development only).
        """
        if self.public_url:
            return self.public_url.rstrip("/")
        return self.app_base_url.rstrip("/")

    def magic_link_url(self, token: str) -> str:
        return f"{self.get_public_url()}/sign/{token}"

    def verify_url(self, document_id: str) -> str:
        return f"{self.get_public_url()}/verify/{document_id}"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Development origins (only in non-production)
DEV_CORS_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:3000",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:3000",
]


def get_cors_origins() -> List[str]:
    """
    Get list of allowed CORS origins.

    Combines origins from ALLOWED_ORIGINS with development origins
    outside production.
    """
    settings = get_settings()
    origins = set(settings.allowed_origins)
    if settings.environment != "production":
        origins.update(DEV_CORS_ORIGINS)
    return sorted(origins)
