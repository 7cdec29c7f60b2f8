from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, Dict
import urllib.parse
from pathlib import Path
import logging

logger = logging.getLogger('ClanHub')

class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Environment Configuration
    environment: str = "development"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8080
    public_base_url: str = "http://localhost:8080"

    # Discord Configuration
    discord_bot_token: str
    discord_guild_id: str
    discord_client_id: str = ""
    discord_client_secret: str = ""
    discord_redirect_uri: str = ""
    discord_api_base: str = "https://discord.com/api/v10"

    # Staff roles (checked owner > webdev > admin)
    discord_owner_role_id: Optional[str] = None
    discord_webdev_role_id: Optional[str] = None
    discord_admin_role_id: Optional[str] = None
    discord_staff_role_id: Optional[str] = None  # legacy staff fallback
    discord_staff_ping_role_id: Optional[str] = None

    # Access roles
    discord_member_role_id: str = ""
    discord_applicant_role_id: str = ""

    # Rank roles (Private carries no role)
    discord_corporal_role_id: Optional[str] = None
    discord_sergeant_role_id: Optional[str] = None
    discord_lieutenant_role_id: Optional[str] = None
    discord_major_role_id: Optional[str] = None

    # Channels
    promotion_channel_id: str = ""
    app_log_channel_id: str = ""
    sync_log_channel_id: str = ""
    ban_report_channel_id: str = ""

    # Token secrets
    session_secret: str
    resolve_token_secret: str

    # PostgreSQL Configuration
    postgres_user: str
    postgres_password: str
    postgres_db: str
    postgres_host: str = "localhost"
    postgres_port: int = 5432

    # Redis Configuration
    redis_enabled: bool = True
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0

    # Promotion rules
    promotion_batch_threshold: int = 5
    tag_marker: str = "420"

    # Path Configuration
    base_dir: Path = Path(__file__).resolve().parent.parent.parent
    log_dir: Path = base_dir / "logs"
    log_json: bool = False

    # Security Settings
    request_timeout: int = 30

    @property
    def database_url(self) -> str:
        """Get PostgreSQL URL formatted for asyncpg"""
        try:
            # URL encode the password to handle special characters
            encoded_password = urllib.parse.quote_plus(self.postgres_password)
            return (
                f"postgresql://{self.postgres_user}:{encoded_password}"
                f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
            )
        except Exception as e:
            logger.error(f"Error creating database URL: {e}")
            raise

    @property
    def sqlalchemy_url(self) -> str:
        """Get PostgreSQL URL formatted for SQLAlchemy"""
        try:
            encoded_password = urllib.parse.quote_plus(self.postgres_password)
            return (
                f"postgresql+asyncpg://{self.postgres_user}:{encoded_password}"
                f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
            )
        except Exception as e:
            logger.error(f"Error creating SQLAlchemy URL: {e}")
            raise

    @property
    def redis_url(self) -> str:
        """Get Redis URL"""
        try:
            if self.redis_password:
                encoded_password = urllib.parse.quote_plus(self.redis_password)
                auth = f":{encoded_password}@"
            else:
                auth = ""
            return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"
        except Exception as e:
            logger.error(f"Error creating Redis URL: {e}")
            raise

    @property
    def is_production(self) -> bool:
        """Check if running in production environment"""
        return self.environment.lower() == "production"

    def rank_role_ids(self) -> Dict[str, Optional[str]]:
        """Discord role ID for each promoted rank"""
        return {
            'Corporal': self.discord_corporal_role_id,
            'Sergeant': self.discord_sergeant_role_id,
            'Lieutenant': self.discord_lieutenant_role_id,
            'Major': self.discord_major_role_id,
        }

    def ensure_directories(self) -> None:
        """Ensure required directories exist"""
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            logger.error(f"Error creating directories: {e}")
            raise

    def validate_settings(self) -> None:
        """Validate critical settings"""
        try:
            if not (1 <= self.postgres_port <= 65535):
                raise ValueError("Invalid PostgreSQL port number")
            if not (1 <= self.redis_port <= 65535):
                raise ValueError("Invalid Redis port number")
            if not (1 <= self.port <= 65535):
                raise ValueError("Invalid HTTP port number")

            if self.promotion_batch_threshold < 1:
                raise ValueError("Promotion batch threshold must be positive")

            # Resolve tokens must never verify as sessions (and vice versa)
            if self.session_secret == self.resolve_token_secret:
                raise ValueError("resolve_token_secret must differ from session_secret")

            if not self.tag_marker.strip():
                raise ValueError("Tag marker must not be empty")

            logger.info("Settings validated successfully")

        except Exception as e:
            logger.error(f"Settings validation error: {e}")
            raise ValueError(f"Invalid settings: {str(e)}")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        validate_assignment=True,
        extra="ignore"
    )

def get_settings() -> Settings:
    """Get validated settings instance"""
    try:
        settings = Settings()
        settings.validate_settings()
        return settings
    except Exception as e:
        logger.critical(f"Failed to load settings: {e}")
        raise
