import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from config import settings

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Two Rooms sync client starting up (server %s)", settings.api_base_url)
    yield
    from services.api_client import close_api_client
    from sync.room_session import session_manager

    await session_manager.close_all()
    await close_api_client()
    logger.info("Sync client shutting down.")


app = FastAPI(
    title="Two Rooms Sync Client",
    version="0.1.0",
    description="Local companion for the Two Rooms realtime sync engine",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.get("/health")
async def health_check():
    return {"status": "ok", "service": "tworooms-client", "version": "0.1.0"}


from routers.session_router import router as session_router

app.include_router(session_router, prefix="/api")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=settings.debug)
