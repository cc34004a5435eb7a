from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import FileResponse
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from datetime import timedelta
from typing import List, Optional
import logging

from analytics import institution_metrics, institution_report, report_range_start
from auth import CERTIFICATE_SCOPE, create_access_token, get_current_profile, verify_token
from config import Config
from database import get_db
from file_utils import (
    ALLOWED_MIME_TYPES, delete_certificate, get_certificate_path, media_type_for, save_certificate
)
from models import Conversation, Donation, Institution, Investor, Message, Profile
from policies import (
    can_access_certificate, can_update_institution, can_update_investor,
    can_view_institution, can_view_investor, is_admin, is_verified_as, require,
    visible_conversations, visible_donations, visible_institutions, visible_investors
)
from reports import export_donations
from schemas import (
    InstitutionCreate, InstitutionOut, InstitutionUpdate, InvestorCreate, InvestorListItem,
    InvestorOut, InvestorUpdate, SignedUrl, validate_form
)
from security_middleware import limiter
from websocket_manager import manager as ws_manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["directory"])

REPORT_RANGE_PATTERN = "^(month|quarter|year)$"
EXPORT_FORMAT_PATTERN = "^(csv|excel)$"


async def store_certificate(upload: Optional[UploadFile], owner_id: str) -> Optional[str]:
    """Validate and save an optional certificate upload, returning its storage path."""
    if not upload or not upload.filename:
        return None

    if not upload.content_type or upload.content_type not in ALLOWED_MIME_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only JPG, PNG and PDF certificates are allowed"
        )

    try:
        path = await save_certificate(upload, owner_id)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=str(e)
        )

    if not path:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid certificate file"
        )
    return path


def directory_event(row, kind: str) -> dict:
    name = row.institution_name if kind == "institution" else row.display_name
    return {"id": row.id, "user_id": row.user_id, "name": name}


def own_institution(db: Session, profile: Profile) -> Institution:
    institution = db.query(Institution).filter(Institution.user_id == profile.id).first()
    if not institution:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No institution found. Complete registration first."
        )
    return institution


def own_investor(db: Session, profile: Profile) -> Investor:
    investor = db.query(Investor).filter(Investor.user_id == profile.id).first()
    if not investor:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No investor profile found. Complete registration first."
        )
    return investor


def apply_directory_filters(query, viewer_is_admin: bool, verification_status: Optional[str],
                            pending_only: bool):
    """Non-admins only ever see verified rows; admins may filter by status."""
    if not viewer_is_admin:
        return query.filter(Profile.verification_status == "verified")
    if pending_only:
        return query.filter(Profile.verification_status == "pending")
    if verification_status:
        return query.filter(Profile.verification_status == verification_status)
    return query


# Institutions

@router.post("/api/institutions", response_model=InstitutionOut, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
async def register_institution(
    request: Request,
    institution_name: str = Form(...),
    country: str = Form(...),
    city: str = Form(...),
    address: str = Form(...),
    contact_person: str = Form(...),
    contact_position: str = Form(None),
    certificate: UploadFile = File(None),
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    """Register the institution record for the calling account, with an optional certificate."""
    require(profile.user_type == "institution", "Only institution accounts can register an institution")

    data = validate_form(
        InstitutionCreate,
        institution_name=institution_name,
        country=country,
        city=city,
        address=address,
        contact_person=contact_person,
        contact_position=contact_position
    )

    if db.query(Institution.id).filter(Institution.user_id == profile.id).first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Institution already registered")

    certificate_path = await store_certificate(certificate, profile.id)

    institution = Institution(user_id=profile.id, certificate_url=certificate_path, **data.model_dump())
    db.add(institution)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        delete_certificate(certificate_path)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Institution already registered")
    db.refresh(institution)

    await ws_manager.broadcast_directory_change("institution", directory_event(institution, "institution"))
    return institution


@router.get("/api/institutions/me", response_model=InstitutionOut)
async def get_own_institution(profile: Profile = Depends(get_current_profile), db: Session = Depends(get_db)):
    return own_institution(db, profile)


@router.put("/api/institutions/me", response_model=InstitutionOut)
async def update_own_institution(
    payload: InstitutionUpdate,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    institution = own_institution(db, profile)
    require(can_update_institution(db, profile, institution))

    for field, value in payload.model_dump(exclude_unset=True).items():
        if value is None and field != "contact_position":
            continue
        setattr(institution, field, value)
    db.commit()
    db.refresh(institution)

    await ws_manager.broadcast_directory_change("institution", directory_event(institution, "institution"))
    return institution


@router.get("/api/institutions/me/analytics")
async def get_institution_analytics(profile: Profile = Depends(get_current_profile), db: Session = Depends(get_db)):
    """Conversation and messaging engagement for the caller's institution."""
    institution = own_institution(db, profile)

    conversations = visible_conversations(db, profile).filter(
        Conversation.institution_id == institution.id
    ).all()
    conversation_ids = [c.id for c in conversations]
    messages = []
    if conversation_ids:
        messages = db.query(Message).filter(Message.conversation_id.in_(conversation_ids)).all()

    return institution_metrics(conversations, messages)


def _report_inputs(db: Session, profile: Profile, institution: Institution, range_name: str):
    since = report_range_start(range_name)
    donations = (
        visible_donations(db, profile)
        .filter(Donation.institution_id == institution.id, Donation.created_at >= since)
        .order_by(Donation.created_at.desc())
        .all()
    )
    conversations = visible_conversations(db, profile).filter(
        Conversation.institution_id == institution.id
    ).all()
    return donations, conversations


@router.get("/api/institutions/me/report")
async def get_institution_report(
    range: str = Query("month", pattern=REPORT_RANGE_PATTERN),
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    institution = own_institution(db, profile)
    donations, conversations = _report_inputs(db, profile, institution, range)
    partner_types = [c.investor.investor_type for c in conversations]

    report = institution_report(donations, conversations, partner_types)
    report["range"] = range
    report["since"] = report_range_start(range).isoformat()
    return report


@router.get("/api/institutions/me/report/export")
async def export_institution_report(
    format: str = Query("csv", pattern=EXPORT_FORMAT_PATTERN),
    range: str = Query("month", pattern=REPORT_RANGE_PATTERN),
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    institution = own_institution(db, profile)
    donations, _ = _report_inputs(db, profile, institution, range)
    return export_donations(donations, format, prefix=f"institution_report_{range}")


@router.get("/api/institutions", response_model=List[InstitutionOut])
async def list_institutions(
    search: Optional[str] = Query(None, max_length=100),
    verification_status: Optional[str] = Query(None, pattern="^(pending|verified|rejected)$"),
    pending_only: bool = Query(False),
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    """Institution directory for verified investors, or the management table for admins."""
    viewer_is_admin = is_admin(db, profile)
    require(viewer_is_admin or is_verified_as(profile, "investor"),
            "Only verified investors can browse institutions")

    query = visible_institutions(db, profile).join(Profile, Institution.user_id == Profile.id)
    query = apply_directory_filters(query, viewer_is_admin, verification_status, pending_only)

    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(
            Institution.institution_name.ilike(pattern),
            Institution.city.ilike(pattern),
            Institution.country.ilike(pattern),
            Institution.contact_person.ilike(pattern),
        ))

    return query.order_by(Institution.created_at.desc()).all()


@router.get("/api/institutions/{institution_id}", response_model=InstitutionOut)
async def get_institution(
    institution_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    institution = db.query(Institution).filter(Institution.id == institution_id).first()
    if not institution or not can_view_institution(db, profile, institution):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Institution not found")
    return institution


# Investors

@router.post("/api/investors", response_model=InvestorOut, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
async def register_investor(
    request: Request,
    investor_type: str = Form(...),
    company_name: str = Form(None),
    certificate: UploadFile = File(None),
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    require(profile.user_type == "investor", "Only investor accounts can register an investor profile")

    data = validate_form(InvestorCreate, investor_type=investor_type, company_name=company_name)

    if db.query(Investor.id).filter(Investor.user_id == profile.id).first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Investor profile already registered")

    certificate_path = await store_certificate(certificate, profile.id)

    investor = Investor(user_id=profile.id, certificate_url=certificate_path, **data.model_dump())
    db.add(investor)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        delete_certificate(certificate_path)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Investor profile already registered")
    db.refresh(investor)

    await ws_manager.broadcast_directory_change("investor", directory_event(investor, "investor"))
    return investor


@router.get("/api/investors/me", response_model=InvestorOut)
async def get_own_investor(profile: Profile = Depends(get_current_profile), db: Session = Depends(get_db)):
    return own_investor(db, profile)


@router.put("/api/investors/me", response_model=InvestorOut)
async def update_own_investor(
    payload: InvestorUpdate,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    investor = own_investor(db, profile)
    require(can_update_investor(db, profile, investor))

    changes = payload.model_dump(exclude_unset=True)
    if changes.get("investor_type"):
        investor.investor_type = changes["investor_type"]
    if "company_name" in changes:
        investor.company_name = (changes["company_name"] or "").strip() or None
    db.commit()
    db.refresh(investor)

    await ws_manager.broadcast_directory_change("investor", directory_event(investor, "investor"))
    return investor


@router.get("/api/investors", response_model=List[InvestorListItem])
async def list_investors(
    search: Optional[str] = Query(None, max_length=100),
    verification_status: Optional[str] = Query(None, pattern="^(pending|verified|rejected)$"),
    pending_only: bool = Query(False),
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    """Verified donors for institutions (with donation totals), or all investors for admins."""
    viewer_is_admin = is_admin(db, profile)
    require(viewer_is_admin or is_verified_as(profile, "institution"),
            "Only verified institutions can browse investors")

    query = visible_investors(db, profile).join(Profile, Investor.user_id == Profile.id)
    query = apply_directory_filters(query, viewer_is_admin, verification_status, pending_only)

    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(
            Profile.full_name.ilike(pattern),
            Investor.company_name.ilike(pattern),
            Investor.investor_type.ilike(pattern),
        ))

    investors = query.order_by(Investor.created_at.desc()).all()

    # Totals only count donations the viewer is allowed to see
    donation_ids = visible_donations(db, profile).with_entities(Donation.id).subquery()
    totals = {
        investor_id: (count, total)
        for investor_id, count, total in db.query(
            Donation.investor_id,
            func.count(Donation.id),
            func.coalesce(func.sum(Donation.amount), 0)
        ).filter(Donation.id.in_(donation_ids.select())).group_by(Donation.investor_id)
    }

    result = []
    for investor in investors:
        count, total = totals.get(investor.id, (0, 0))
        item = InvestorListItem.model_validate(investor)
        item.donations_count = count
        item.total_donated = round(float(total), 2)
        result.append(item)
    return result


@router.get("/api/investors/{investor_id}", response_model=InvestorOut)
async def get_investor(
    investor_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    investor = db.query(Investor).filter(Investor.id == investor_id).first()
    if not investor or not can_view_investor(db, profile, investor):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Investor not found")
    return investor


# Certificates

@router.post("/api/certificates")
@limiter.limit("10/minute")
async def upload_certificate(
    request: Request,
    certificate: UploadFile = File(...),
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    """Replace the certificate attached to the caller's institution or investor record."""
    owner = (
        db.query(Institution).filter(Institution.user_id == profile.id).first()
        or db.query(Investor).filter(Investor.user_id == profile.id).first()
    )
    if owner is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Complete registration before uploading")

    path = await store_certificate(certificate, profile.id)
    if path is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No certificate provided")

    previous = owner.certificate_url
    owner.certificate_url = path
    db.commit()
    if previous and previous != path:
        delete_certificate(previous)

    return {"success": True, "certificate_url": path}


@router.get("/api/certificates/signed-url", response_model=SignedUrl)
async def create_certificate_url(
    path: str = Query(..., min_length=3),
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    """Short-lived download link for a certificate the caller may read."""
    require(can_access_certificate(db, profile, path))
    if get_certificate_path(path) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Certificate not found")

    token = create_access_token(
        data={"sub": path},
        expires_delta=timedelta(seconds=Config.SIGNED_URL_EXPIRE_SECONDS),
        scope=CERTIFICATE_SCOPE
    )
    return {
        "url": f"/api/storage/certificates/{path}?token={token}",
        "expires_in": Config.SIGNED_URL_EXPIRE_SECONDS
    }


@router.get("/api/storage/certificates/{path:path}")
async def download_certificate(path: str, token: str = Query(...)):
    if verify_token(token, scope=CERTIFICATE_SCOPE) != path:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or expired link")

    file_path = get_certificate_path(path)
    if not file_path:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Certificate not found")

    return FileResponse(file_path, media_type=media_type_for(file_path))
