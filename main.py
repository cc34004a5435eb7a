from fastapi import FastAPI, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.concurrency import run_in_threadpool
from contextlib import asynccontextmanager
from datetime import datetime
import json
import logging

import accounts
import admin
import directory
import donations
import messaging
from auth import get_password_hash, load_active_profile
from config import Config
from database import engine, Base, SessionLocal
from file_utils import ensure_directories, cleanup_temp_files
from models import Profile
from policies import can_subscribe
from security_middleware import (
    SecurityHeadersMiddleware,
    RequestValidationMiddleware,
    IPWhitelistMiddleware,
    setup_rate_limits
)
from websocket_manager import manager as ws_manager

logging.basicConfig(
    level=Config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)


def seed_default_admin():
    """Create the default admin account when it does not exist yet."""
    db = SessionLocal()
    try:
        admin_profile = db.query(Profile).filter(Profile.email == Config.DEFAULT_ADMIN_EMAIL).first()
        if not admin_profile:
            db.add(Profile(
                email=Config.DEFAULT_ADMIN_EMAIL,
                hashed_password=get_password_hash(Config.DEFAULT_ADMIN_PASSWORD),
                full_name="Administrator",
                user_type="admin",
                verification_status="verified",
                is_active=True
            ))
            db.commit()
            logger.warning(f"Default admin created: {Config.DEFAULT_ADMIN_EMAIL}. Change its password.")
        else:
            logger.info("Admin user already exists")
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting up DonorMatch...")

    Base.metadata.create_all(bind=engine)
    ensure_directories()
    cleanup_temp_files()
    seed_default_admin()

    logger.info("Server ready to accept connections")

    yield

    logger.info("Shutting down server...")


app = FastAPI(
    title="DonorMatch",
    description="Verified institutions and donors: messaging, donation tracking and verification management",
    version="1.0.0",
    lifespan=lifespan
)

# Setup rate limiting
limiter = setup_rate_limits(app)

# Security Middleware (order matters!)
app.add_middleware(RequestValidationMiddleware)
app.add_middleware(SecurityHeadersMiddleware)

if Config.ADMIN_IP_WHITELIST:
    app.add_middleware(IPWhitelistMiddleware, whitelist=Config.ADMIN_IP_WHITELIST)

app.add_middleware(
    CORSMiddleware,
    allow_origins=Config.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.include_router(accounts.router)
app.include_router(directory.router)
app.include_router(messaging.router)
app.include_router(donations.router)
app.include_router(admin.router)


def _token_user_id(token: str):
    db = SessionLocal()
    try:
        profile = load_active_profile(db, token)
        return profile.id if profile else None
    finally:
        db.close()


def _authorize_channel(user_id: str, channel: str) -> bool:
    # Re-read the profile so verification changes apply to new subscriptions
    db = SessionLocal()
    try:
        profile = db.query(Profile).filter(Profile.id == user_id).first()
        return bool(profile and profile.is_active and can_subscribe(db, profile, channel))
    finally:
        db.close()


async def _handle_client_message(websocket: WebSocket, user_id: str, message: dict):
    message_type = message.get("type")
    channel = message.get("channel")

    if message_type == "ping":
        await websocket.send_json({
            "type": "pong",
            "timestamp": datetime.now().isoformat()
        })
    elif message_type == "subscribe" and isinstance(channel, str):
        # Sync session, kept off the event loop
        if await run_in_threadpool(_authorize_channel, user_id, channel):
            ws_manager.subscribe(websocket, channel)
            await websocket.send_json({"type": "subscribed", "channel": channel})
        else:
            await websocket.send_json({"type": "error", "channel": channel, "message": "Subscription not permitted"})
    elif message_type == "unsubscribe" and isinstance(channel, str):
        ws_manager.unsubscribe(websocket, channel)
        await websocket.send_json({"type": "unsubscribed", "channel": channel})
    else:
        await websocket.send_json({"type": "error", "message": "Unknown message"})


# WebSocket endpoint for real-time change events
@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: str = Query(...)):
    """
    Change feed for messages, verification status and directory updates.
    Requires JWT token authentication via query parameter.

    Usage: ws://localhost:8000/ws?token=<jwt_token>
    """
    user_id = await run_in_threadpool(_token_user_id, token)
    if user_id is None:
        await websocket.close(code=1008, reason="Invalid authentication token")
        return

    await ws_manager.connect(websocket, user_id)
    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                # Ignore malformed JSON
                continue
            if isinstance(message, dict):
                await _handle_client_message(websocket, user_id, message)
    except WebSocketDisconnect:
        ws_manager.disconnect(websocket, user_id)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow(),
        "websocket_connections": ws_manager.get_connection_count(),
        "connected_users": len(ws_manager.get_connected_users())
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
