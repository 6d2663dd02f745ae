from fastapi import APIRouter, FastAPI, Header, HTTPException, Query, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator
from typing import Optional
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import uvicorn
import logging

import config
config.setup_logging()

import identity
from analytics import analytics
from poll_gateway import poll_gateway
from room_store import room_store
from scheduler import Scheduler
from socket_manager import socket_manager
from storage import archive_store

logger = logging.getLogger(__name__)

scheduler = Scheduler(sweep=socket_manager.sweep_inactive, daily_reset=socket_manager.reset_leaderboards)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting trivia backend")
    scheduler.start()
    yield
    await scheduler.stop()
    logger.info("Shutting down trivia backend")


app = FastAPI(title="Channel Trivia Backend", lifespan=lifespan)

# Every route answers with and without the /api prefix (the activity proxy strips it)
router = APIRouter()


class TokenRequest(BaseModel):
    code: str = ""


class GameEventRequest(BaseModel):
    event: str
    data: dict = {}

    @field_validator('event')
    @classmethod
    def normalize_event(cls, v: str) -> str:
        return v.strip().lower()


async def require_user(authorization: Optional[str]) -> dict:
    token = identity.bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="missing auth")
    try:
        return await identity.validate_token(token)
    except identity.IdentityError:
        raise HTTPException(status_code=401, detail="invalid token")


async def require_admin(authorization: Optional[str]) -> dict:
    user = await require_user(authorization)
    if not identity.is_admin(user):
        raise HTTPException(status_code=403, detail="unauthorized")
    return user


@router.post("/token")
async def exchange_token(request: TokenRequest):
    """Exchange an OAuth ``code`` from the embedded SDK for an access token."""
    if not request.code:
        return JSONResponse(status_code=400, content={"error": "missing code"})
    try:
        return await identity.exchange_code(request.code)
    except identity.OAuthUnavailable:
        logger.error("OAuth client credentials are not configured")
        return JSONResponse(status_code=503, content={"error": "OAuth not configured"})
    except Exception:
        logger.exception("Error exchanging OAuth code")
        return JSONResponse(status_code=500, content={"error": "Internal server error"})


@router.get("/health")
async def health():
    return {"status": "healthy", "server": "quiz-backend",
            "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/me")
async def get_me(authorization: Optional[str] = Header(default=None)):
    return await require_user(authorization)


@router.get("/analytics")
async def get_analytics(authorization: Optional[str] = Header(default=None)):
    await require_admin(authorization)
    return analytics.snapshot(current_sessions=len(room_store.rooms))


@router.get("/leaderboard/{room_id}/history")
async def get_leaderboard_history(room_id: str, days: int = config.ARCHIVE_HISTORY_DAYS,
                                  authorization: Optional[str] = Header(default=None)):
    await require_admin(authorization)
    if days < 1 or days > 90:
        raise HTTPException(status_code=400, detail="days must be between 1 and 90")
    return {"roomId": room_id, "history": archive_store.history(room_id, days)}


@router.post("/game-event")
async def game_event(request: GameEventRequest):
    try:
        return await poll_gateway.handle_event(request.event, request.data)
    except Exception:
        logger.exception("Game event error (%s)", request.event)
        return JSONResponse(status_code=500, content={"success": False, "error": "Failed to process game event"})


@router.get("/game-state/{room_id}")
async def game_state(room_id: str):
    try:
        return poll_gateway.game_state(room_id)
    except Exception:
        logger.exception("Game state error for room %s", room_id)
        return JSONResponse(status_code=500, content={"success": False, "error": "Failed to get game state"})


app.include_router(router, prefix="/api")
app.include_router(router)


@app.websocket("/ws")
@app.websocket("/api/ws")
async def websocket_endpoint(websocket: WebSocket, token: str = "",
                             channel_id: str = Query(default="", alias="channelId"),
                             reconnecting: bool = False,
                             authorization: Optional[str] = Header(default=None)):
    # Header first; browsers can only pass the token in the query string
    token = identity.bearer_token(authorization) or token
    await socket_manager.connect(websocket, token, channel_id, reconnecting=reconnecting)


# Configure CORS
if config.ALLOWED_ORIGINS.strip():
    origins = [o.strip() for o in config.ALLOWED_ORIGINS.split(",")]
    socket_manager.allowed_origins = origins
else:
    origins = [
        "http://127.0.0.1",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.get("/")
async def root():
    return {"message": "Trivia API is running"}


if __name__ == "__main__":
    uvicorn.run("main:app", host=config.HOST, port=config.PORT, reload=True)
