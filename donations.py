from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional
import logging

from analytics import donation_stats
from auth import get_current_profile
from database import get_db
from models import Donation, Institution, Investor, Profile
from policies import (
    can_create_donation, can_manage_donation, can_view_donation, is_admin, require, visible_donations
)
from schemas import DonationCreate, DonationOut, DonationStats, DonationStatusUpdate
from websocket_manager import manager as ws_manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/donations", tags=["donations"])

STATUS_PATTERN = "^(pending|completed|cancelled|failed)$"


def donation_event(donation: Donation, action: str) -> dict:
    data = DonationOut.model_validate(donation).model_dump(mode="json")
    data["action"] = action
    return data


def load_donation(db: Session, donation_id: str, viewer: Profile) -> Donation:
    donation = db.query(Donation).filter(Donation.id == donation_id).first()
    if not donation or not can_view_donation(db, viewer, donation):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Donation not found")
    return donation


@router.post("", response_model=DonationOut, status_code=status.HTTP_201_CREATED)
async def create_donation(
    payload: DonationCreate,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    """Record a pledge from an investor to an institution."""
    if payload.investor_id and is_admin(db, profile):
        investor = db.query(Investor).filter(Investor.id == payload.investor_id).first()
    else:
        investor = db.query(Investor).filter(Investor.user_id == profile.id).first()
    if investor is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only investors can record donations")

    require(can_create_donation(db, profile, investor))

    institution = db.query(Institution).filter(Institution.id == payload.institution_id).first()
    if institution is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Institution not found")

    donation = Donation(
        investor_id=investor.id,
        institution_id=institution.id,
        amount=payload.amount,
        currency=payload.currency,
        message=payload.message,
    )
    db.add(donation)
    db.commit()
    db.refresh(donation)
    logger.info(f"Donation {donation.id}: {donation.amount} {donation.currency} to {institution.id}")

    await ws_manager.broadcast_donation_changed(donation_event(donation, "created"))
    return donation


@router.get("", response_model=List[DonationOut])
async def list_donations(
    status_filter: Optional[str] = Query(None, alias="status", pattern=STATUS_PATTERN),
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    query = visible_donations(db, profile)
    if status_filter:
        query = query.filter(Donation.status == status_filter)
    return query.order_by(Donation.created_at.desc()).all()


@router.get("/stats", response_model=DonationStats)
async def get_donation_stats(profile: Profile = Depends(get_current_profile), db: Session = Depends(get_db)):
    """Totals over the donations visible to the caller."""
    return donation_stats(visible_donations(db, profile).all())


@router.get("/{donation_id}", response_model=DonationOut)
async def get_donation(
    donation_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    return load_donation(db, donation_id, profile)


@router.put("/{donation_id}/status", response_model=DonationOut)
async def update_donation_status(
    donation_id: str,
    payload: DonationStatusUpdate,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    require(can_manage_donation(db, profile), "Only admins can update donations")
    donation = load_donation(db, donation_id, profile)

    donation.status = payload.status
    db.commit()
    db.refresh(donation)

    await ws_manager.broadcast_donation_changed(donation_event(donation, "updated"))
    return donation


@router.delete("/{donation_id}")
async def delete_donation(
    donation_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    require(can_manage_donation(db, profile), "Only admins can delete donations")
    donation = load_donation(db, donation_id, profile)

    event = donation_event(donation, "deleted")
    db.delete(donation)
    db.commit()

    await ws_manager.broadcast_donation_changed(event)
    return {"success": True, "message": "Donation deleted"}
