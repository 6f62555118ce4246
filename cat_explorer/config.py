import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://localhost:5173"


def _split_csv(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def resolve_database_url() -> str:
    # Prefer discrete DB_* variables when present (Docker local). Fallback to DATABASE_URL.
    db_user = os.getenv("DB_USER")
    db_password = os.getenv("DB_PASSWORD")
    db_host = os.getenv("DB_HOST")
    db_port = os.getenv("DB_PORT", "5432")
    db_name = os.getenv("DB_NAME")
    db_sslmode = os.getenv("DB_SSLMODE")  # e.g., require

    if db_user and db_password and db_host and db_name:
        url = f"postgresql+psycopg2://{db_user}:{db_password}@{db_host}:{db_port}/{db_name}"
        if db_sslmode:
            url += f"?sslmode={db_sslmode}"
        return url

    url = os.getenv("DATABASE_URL")
    if not url:
        missing = [k for k, v in {
            "DB_USER": db_user,
            "DB_PASSWORD": db_password,
            "DB_HOST": db_host,
            "DB_NAME": db_name,
        }.items() if not v]

        raise RuntimeError(
            f"Missing required database env vars: {', '.join(missing)}. "
            "Set DB_USER/DB_PASSWORD/DB_HOST/DB_NAME (optional DB_PORT, DB_SSLMODE) or provide DATABASE_URL."
        )
    return url


@dataclass(frozen=True)
class Settings:
    database_url: str
    session_secret: str
    admin_emails: List[str] = field(default_factory=list)
    google_client_id: Optional[str] = None
    session_ttl_seconds: int = 3600
    store_timeout_seconds: float = 5.0
    identity_timeout_seconds: float = 5.0
    cors_origins: List[str] = field(default_factory=lambda: _split_csv(DEFAULT_CORS_ORIGINS))
    upload_dir: str = "uploads"
    max_image_bytes: int = 1024 * 1024
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        secret = os.getenv("SESSION_SECRET")
        if not secret:
            raise RuntimeError("Missing required env var: SESSION_SECRET")
        return cls(
            database_url=resolve_database_url(),
            session_secret=secret,
            admin_emails=[e.lower() for e in _split_csv(os.getenv("ADMIN_EMAILS"))],
            google_client_id=os.getenv("GOOGLE_CLIENT_ID") or None,
            session_ttl_seconds=int(os.getenv("SESSION_TTL_SECONDS", 3600)),
            store_timeout_seconds=float(os.getenv("STORE_TIMEOUT_SECONDS", 5)),
            identity_timeout_seconds=float(os.getenv("IDENTITY_TIMEOUT_SECONDS", 5)),
            cors_origins=_split_csv(os.getenv("CORS_ORIGINS", DEFAULT_CORS_ORIGINS)),
            upload_dir=os.getenv("UPLOAD_DIR", "uploads"),
            max_image_bytes=int(os.getenv("MAX_IMAGE_BYTES", 1024 * 1024)),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
