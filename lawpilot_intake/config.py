"""
Configuration for the Intake Service
====================================

Environment variables:
- STORAGE_BACKEND: local|s3 (default: local)
- STORAGE_PATH: Root directory for the local blob bucket (default: ./storage)
- DOCUMENTS_BUCKET: Blob bucket name (default: documents)
- S3_ENDPOINT / AWS_REGION: S3 connection (s3 backend only)
- SIGNED_URL_TTL: Signed URL lifetime in seconds (default: 3600)
- JWT_SECRET_KEY: Secret used for access tokens and signed file URLs
- REDIS_URL: Optional Redis for the token revocation fast path
- GOOGLE_CLIENT_ID: OAuth client id; Google id_tokens must carry it as audience
- ASSOCIATION_LOCK_ENABLED: Serialize association runs per guest session (default: true)
- ASSOCIATION_COMPENSATE: Delete the orphan case when document migration fails (default: true)
- BROWSER_STATE_MAX_ENTRIES / BROWSER_STATE_IDLE_SECONDS: Bound on per-browser state kept in memory
- DATABASE_URL: Read by db.session (default: sqlite:///./dev.db)
"""

from typing import Optional, List
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings from environment variables"""

    # Blob storage
    storage_backend: str = "local"
    storage_path: str = "./storage"
    documents_bucket: str = "documents"
    s3_endpoint: Optional[str] = None
    aws_region: str = "us-east-1"
    signed_url_ttl: int = 60 * 60  # 1 hour
    upload_cache_control: str = "3600"

    # Auth
    jwt_secret_key: str = "dev-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60
    redis_url: Optional[str] = None

    # OAuth (Google OpenID Connect); unset disables the provider
    google_client_id: Optional[str] = None
    google_jwks_url: str = "https://www.googleapis.com/oauth2/v3/certs"

    # Association flow
    association_lock_enabled: bool = True
    association_compensate: bool = True
    default_case_category: str = "immigration"

    # HTTP surface
    cors_allow_origins: str = "http://localhost:3000,http://127.0.0.1:3000"
    browser_cookie_name: str = "law-pilot-storage"
    browser_state_max_entries: int = 10000
    browser_state_idle_seconds: int = 60 * 60 * 24  # 1 day
    public_base_url: str = "http://localhost:8000"

    # Service info
    service_version: str = "1.0.0"

    class Config:
        env_prefix = ""
        case_sensitive = False
        env_file = ".env"
        env_file_encoding = "utf-8"

    def cors_origins(self) -> List[str]:
        origins: List[str] = []
        for item in self.cors_allow_origins.split(","):
            origin = item.strip().strip('"').strip("'").rstrip("/")
            if origin:
                origins.append(origin)
        return origins

    def validate_storage_config(self) -> List[str]:
        """Validate storage/auth configuration, return list of warnings"""
        warnings = []

        if self.storage_backend not in ("local", "s3"):
            warnings.append(f"STORAGE_BACKEND={self.storage_backend} is not supported (local|s3)")

        if self.storage_backend == "s3" and not self.documents_bucket:
            warnings.append("STORAGE_BACKEND=s3 but DOCUMENTS_BUCKET not set")

        if self.jwt_secret_key == "dev-secret-key-change-in-production":
            warnings.append("JWT_SECRET_KEY is the development default")

        return warnings


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
