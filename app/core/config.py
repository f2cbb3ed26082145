"""
Application configuration
"""
import os
from typing import Optional
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    # Application settings
    APP_NAME: str = "Dreamlets API"
    VERSION: str = "1.0.0"
    DEBUG: bool = os.getenv("DEBUG", "False").lower() == "true"

    # API Keys
    OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")

    # Models
    STORY_MODEL: str = os.getenv("STORY_MODEL", "gpt-4o")
    IMAGE_MODEL: str = os.getenv("IMAGE_MODEL", "dall-e-3")
    IMAGE_SIZE: str = os.getenv("IMAGE_SIZE", "1024x1024")
    IMAGE_QUALITY: str = os.getenv("IMAGE_QUALITY", "standard")

    # Storytelling assistant (stateful mode)
    ASSISTANT_ID: Optional[str] = os.getenv("ASSISTANT_ID")
    ASSISTANT_NAME: str = os.getenv("ASSISTANT_NAME", "Dreamlets Storytelling Companion")
    RUN_POLL_INTERVAL: float = float(os.getenv("RUN_POLL_INTERVAL", "1.0"))
    RUN_TIMEOUT: float = float(os.getenv("RUN_TIMEOUT", "60"))

    # Usage limits
    GUEST_STORY_LIMIT: int = int(os.getenv("GUEST_STORY_LIMIT", "3"))
    GUEST_STORY_WINDOW_DAYS: int = int(os.getenv("GUEST_STORY_WINDOW_DAYS", "30"))
    FREE_STORIES_PER_MONTH: int = int(os.getenv("FREE_STORIES_PER_MONTH", "3"))
    PREMIUM_15_STORIES_PER_MONTH: int = int(os.getenv("PREMIUM_15_STORIES_PER_MONTH", "15"))

    # Database settings
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    DATABASE_URL: Optional[str] = None

    # Session cookie signing
    SECRET_KEY: str = os.getenv("SECRET_KEY", "your-secret-key-change-this-in-production")

    # Illustration storage
    STORAGE_DIR: str = os.getenv("STORAGE_DIR", "static/stories")
    STORAGE_URL_PREFIX: str = os.getenv("STORAGE_URL_PREFIX", "/static/stories")

    # AWS S3 Settings (optional)
    AWS_ACCESS_KEY_ID: Optional[str] = os.getenv("AWS_ACCESS_KEY_ID")
    AWS_SECRET_ACCESS_KEY: Optional[str] = os.getenv("AWS_SECRET_ACCESS_KEY")
    AWS_REGION: str = os.getenv("AWS_REGION", "us-west-2")
    AWS_S3_BUCKET: Optional[str] = os.getenv("AWS_S3_BUCKET")

    # CORS
    ALLOWED_ORIGINS: str = os.getenv("ALLOWED_ORIGINS", "")

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Set database URL based on environment
        if not self.DATABASE_URL:
            if self.ENVIRONMENT == "production":
                # PostgreSQL for production
                db_user = os.getenv("DB_USER", "postgres")
                db_pass = os.getenv("DB_PASSWORD", "")
                db_host = os.getenv("DB_HOST", "localhost")
                db_port = os.getenv("DB_PORT", "5432")
                db_name = os.getenv("DB_NAME", "dreamlets")
                self.DATABASE_URL = f"postgresql://{db_user}:{db_pass}@{db_host}:{db_port}/{db_name}"
            else:
                # SQLite for development
                self.DATABASE_URL = "sqlite:///./dreamlets.db"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
