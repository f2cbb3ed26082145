"""
CORS configuration
"""
from typing import List

from app.core.config import settings

# Local frontends
DEFAULT_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://localhost:5000",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:5000",
]


def get_allowed_origins() -> List[str]:
    """Default origins plus ALLOWED_ORIGINS (comma separated), without duplicates"""
    origins = list(DEFAULT_ORIGINS)
    for origin in settings.ALLOWED_ORIGINS.split(","):
        origin = origin.strip()
        if origin and origin not in origins:
            origins.append(origin)
    return origins


CORS_CONFIG = {
    # Guest sessions ride on a cookie
    "allow_credentials": True,
    "allow_methods": ["GET", "POST", "DELETE", "OPTIONS"],
    "allow_headers": ["*"],
    "max_age": 3600
}
