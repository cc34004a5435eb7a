from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import List
import logging

from auth import get_current_profile, get_password_hash, issue_token_for, verify_password
from database import get_db
from models import Profile, UserRole
from policies import can_view_profile, can_view_roles, require, resolve_role
from schemas import (
    LoginRequest, MeOut, PasswordChange, ProfileOut, ProfileUpdate, RoleOut,
    SignupRequest, Token
)
from security_middleware import limiter
from websocket_manager import manager as ws_manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["accounts"])


def profile_event(profile: Profile) -> dict:
    return {
        "id": profile.id,
        "email": profile.email,
        "full_name": profile.full_name,
        "user_type": profile.user_type,
        "verification_status": profile.verification_status,
        "updated_at": profile.updated_at.isoformat() if profile.updated_at else None,
    }


@router.post("/api/auth/signup", response_model=Token, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
async def signup(request: Request, payload: SignupRequest, db: Session = Depends(get_db)):
    """Create an institution or investor account pending verification."""
    profile = Profile(
        email=payload.email.lower(),
        hashed_password=get_password_hash(payload.password),
        full_name=payload.full_name,
        phone=payload.phone,
        user_type=payload.user_type,
        verification_status="pending",
    )
    db.add(profile)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="An account with this email already exists"
        )
    db.refresh(profile)
    logger.info(f"New {profile.user_type} account {profile.id} awaiting verification")

    await ws_manager.broadcast_profile_updated(profile_event(profile))

    return issue_token_for(profile)


@router.post("/api/auth/login", response_model=Token)
@limiter.limit("5/minute")  # Max 5 login attempts per minute per IP
async def login(request: Request, credentials: LoginRequest, db: Session = Depends(get_db)):
    """Login endpoint with rate limiting to prevent brute force attacks."""
    profile = db.query(Profile).filter(Profile.email == credentials.email.lower()).first()
    if not profile or not verify_password(credentials.password, profile.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password"
        )

    if not profile.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Account disabled"
        )

    return issue_token_for(profile)


@router.get("/api/auth/me", response_model=MeOut)
async def read_me(profile: Profile = Depends(get_current_profile), db: Session = Depends(get_db)):
    """Current profile with its effective role."""
    data = ProfileOut.model_validate(profile).model_dump()
    return MeOut(**data, role=resolve_role(db, profile))


@router.put("/api/auth/change-password")
async def change_password(
    payload: PasswordChange,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    if not verify_password(payload.current_password, profile.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Current password is incorrect"
        )

    profile.hashed_password = get_password_hash(payload.new_password)
    db.commit()

    return {
        "success": True,
        "message": "Password changed successfully"
    }


@router.put("/api/profiles/me", response_model=ProfileOut)
async def update_own_profile(
    payload: ProfileUpdate,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    """Update contact details. Verification status is never self-editable."""
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(profile, field, value)
    db.commit()
    db.refresh(profile)
    return profile


@router.get("/api/profiles/{profile_id}", response_model=ProfileOut)
async def get_profile(
    profile_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    target = db.query(Profile).filter(Profile.id == profile_id).first()
    # Invisible rows look the same as missing ones
    if not target or not can_view_profile(db, profile, target):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    return target


@router.get("/api/profiles/{profile_id}/roles", response_model=List[RoleOut])
async def get_profile_roles(
    profile_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    require(can_view_roles(db, profile, profile_id))
    return db.query(UserRole).filter(UserRole.user_id == profile_id).order_by(UserRole.created_at).all()
