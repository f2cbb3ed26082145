import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.middleware.sessions import SessionMiddleware

from app.api.routes import family, story
from app.core.config import settings
from app.core.cors import CORS_CONFIG, get_allowed_origins
from app.core.database import SessionLocal, create_tables
from app.core.errors import StoryGenerationError
from app.services.profile_store import prune_guest_stories_before

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_tables()
    with SessionLocal() as db:
        cutoff = datetime.now(timezone.utc) - timedelta(days=settings.GUEST_STORY_WINDOW_DAYS)
        pruned = prune_guest_stories_before(db, cutoff)
    if pruned:
        logger.info(f"🧹 Removed {pruned} expired guest stories")
    logger.info(f"🌙 {settings.APP_NAME} {settings.VERSION} started ({settings.ENVIRONMENT})")
    yield


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    description="Backend API for personalized, illustrated bedtime stories",
    version=settings.VERSION,
    lifespan=lifespan
)

origins = get_allowed_origins()

app.add_middleware(CORSMiddleware, allow_origins=origins, **CORS_CONFIG)
# Guests keep their profile and stories in the signed session cookie
app.add_middleware(SessionMiddleware, secret_key=settings.SECRET_KEY, same_site="lax")


@app.exception_handler(StoryGenerationError)
async def story_generation_error_handler(request: Request, exc: StoryGenerationError):
    if exc.status_code >= 500:
        logger.error(f"❌ {request.url.path} failed: {exc.reason}: {exc.message}")
    else:
        logger.info(f"{request.url.path} refused: {exc.reason}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Serve stored illustrations
os.makedirs(settings.STORAGE_DIR, exist_ok=True)
os.makedirs("static", exist_ok=True)
app.mount("/static", StaticFiles(directory="static"), name="static")


# Root endpoint
@app.get("/")
async def root():
    """API Information"""
    return {
        "message": f"{settings.APP_NAME}",
        "status": "operational",
        "version": settings.VERSION,
        "documentation": "/docs"
    }


# Health check endpoint
@app.get("/api/v1/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "openai_configured": bool(settings.OPENAI_API_KEY),
        "origins_count": len(origins)
    }


app.include_router(story.router, prefix="/api/v1/stories", tags=["stories"])
app.include_router(family.router, prefix="/api/v1/family", tags=["family"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
