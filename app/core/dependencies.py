"""
FastAPI dependencies
"""
from typing import Annotated, Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.services.profile_store import DatabaseProfileStore, ProfileStore, SessionProfileStore

DatabaseSession = Annotated[Session, Depends(get_db)]

# Set by the auth layer after login
SESSION_USER_KEY = "user_id"


def get_current_user_id(request: Request) -> Optional[str]:
    """Account id from the session, None for guests"""
    return request.session.get(SESSION_USER_KEY)


def get_profile_store(request: Request, db: DatabaseSession) -> ProfileStore:
    """Database-backed store for accounts, session-backed for guests"""
    user_id = get_current_user_id(request)
    if user_id:
        return DatabaseProfileStore(db, user_id)
    return SessionProfileStore(request.session, db)


CurrentUserId = Annotated[Optional[str], Depends(get_current_user_id)]
CallerStore = Annotated[ProfileStore, Depends(get_profile_store)]
