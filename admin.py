from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from datetime import datetime
from typing import List, Optional
import logging

from accounts import profile_event
from analytics import dashboard_stats
from auth import get_current_profile
from database import get_db
from directory import apply_directory_filters
from models import Donation, Institution, Investor, Profile, UserRole
from policies import can_manage_roles, can_set_verification, can_subscribe, is_admin, require
from reports import export_donations
from schemas import (
    InstitutionAdminOut, InvestorAdminOut, ProfileList, ProfileOut, RoleGrant, RoleOut, VerificationUpdate
)
from websocket_manager import manager as ws_manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


# Dependency to get current admin user
async def get_current_admin(
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
) -> Profile:
    require(is_admin(db, profile), "Admin access required")
    return profile


@router.get("/dashboard-stats")
async def get_dashboard_stats(
    current_admin: Profile = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Get dashboard statistics."""
    return dashboard_stats(db)


@router.get("/profiles", response_model=ProfileList)
async def list_profiles(
    user_type: Optional[str] = Query(None, pattern="^(institution|investor|admin)$"),
    verification_status: Optional[str] = Query(None, pattern="^(pending|verified|rejected)$"),
    pending_only: bool = Query(False),
    search: Optional[str] = Query(None, max_length=100),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    current_admin: Profile = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Accounts for the verification management tables."""
    query = db.query(Profile)

    if user_type:
        query = query.filter(Profile.user_type == user_type)
    if pending_only:
        query = query.filter(Profile.verification_status == "pending")
    elif verification_status:
        query = query.filter(Profile.verification_status == verification_status)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(Profile.email.ilike(pattern), Profile.full_name.ilike(pattern)))

    total = query.count()
    profiles = query.order_by(Profile.created_at.desc()).offset(skip).limit(limit).all()
    return {"items": profiles, "total": total}


@router.get("/institutions", response_model=List[InstitutionAdminOut])
async def list_institution_accounts(
    verification_status: Optional[str] = Query(None, pattern="^(pending|verified|rejected)$"),
    pending_only: bool = Query(False),
    search: Optional[str] = Query(None, max_length=100),
    current_admin: Profile = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Institutions with their owning accounts, for the institutions management table."""
    query = db.query(Institution).join(Profile, Institution.user_id == Profile.id)
    query = apply_directory_filters(query, True, verification_status, pending_only)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(
            Institution.institution_name.ilike(pattern),
            Institution.city.ilike(pattern),
            Profile.email.ilike(pattern),
        ))
    return query.order_by(Institution.created_at.desc()).all()


@router.get("/investors", response_model=List[InvestorAdminOut])
async def list_investor_accounts(
    verification_status: Optional[str] = Query(None, pattern="^(pending|verified|rejected)$"),
    pending_only: bool = Query(False),
    search: Optional[str] = Query(None, max_length=100),
    current_admin: Profile = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    query = db.query(Investor).join(Profile, Investor.user_id == Profile.id)
    query = apply_directory_filters(query, True, verification_status, pending_only)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(
            Investor.company_name.ilike(pattern),
            Profile.full_name.ilike(pattern),
            Profile.email.ilike(pattern),
        ))
    return query.order_by(Investor.created_at.desc()).all()


@router.put("/profiles/{profile_id}/verification", response_model=ProfileOut)
async def set_verification(
    profile_id: str,
    payload: VerificationUpdate,
    current_admin: Profile = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Verify, reject, or reset an account to pending."""
    require(can_set_verification(db, current_admin))

    target = db.query(Profile).filter(Profile.id == profile_id).first()
    if not target:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Profile not found"
        )

    was_verified = target.is_verified
    target.verification_status = payload.status
    target.reviewed_at = datetime.utcnow()
    target.reviewed_by = current_admin.email
    db.commit()
    db.refresh(target)

    logger.info(f"{current_admin.email} set {target.id} to {payload.status}")

    # Open sockets keep only the channels the new status still allows
    revoked = await ws_manager.revoke_subscriptions(
        target.id, lambda channel: can_subscribe(db, target, channel)
    )
    if revoked:
        logger.info(f"Revoked {len(revoked)} subscriptions for {target.id}")

    await ws_manager.broadcast_profile_updated(profile_event(target), was_listed=was_verified)

    return target


@router.get("/roles", response_model=List[RoleOut])
async def list_roles(
    user_id: Optional[str] = None,
    current_admin: Profile = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    query = db.query(UserRole)
    if user_id:
        query = query.filter(UserRole.user_id == user_id)
    return query.order_by(UserRole.created_at.desc()).all()


@router.post("/roles", response_model=RoleOut, status_code=status.HTTP_201_CREATED)
async def grant_role(
    payload: RoleGrant,
    current_admin: Profile = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    require(can_manage_roles(db, current_admin))

    if not db.query(Profile.id).filter(Profile.id == payload.user_id).first():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")

    role = UserRole(user_id=payload.user_id, role=payload.role)
    db.add(role)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Role already granted")
    db.refresh(role)

    logger.info(f"{current_admin.email} granted {payload.role} to {payload.user_id}")
    return role


@router.delete("/roles/{role_id}")
async def revoke_role(
    role_id: str,
    current_admin: Profile = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    require(can_manage_roles(db, current_admin))

    role = db.query(UserRole).filter(UserRole.id == role_id).first()
    if not role:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Role not found")

    db.delete(role)
    db.commit()
    return {"success": True, "message": "Role revoked"}


@router.get("/donations/export")
async def export_all_donations(
    format: str = Query("csv", pattern="^(csv|excel)$"),
    status_filter: Optional[str] = Query(None, alias="status", pattern="^(pending|completed|cancelled|failed)$"),
    current_admin: Profile = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Export donations as CSV or Excel."""
    query = db.query(Donation)
    if status_filter:
        query = query.filter(Donation.status == status_filter)

    donations = query.order_by(Donation.created_at.desc()).all()
    return export_donations(donations, format)
