from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import List, Optional
import logging

from auth import get_current_profile
from database import get_db
from models import Conversation, Institution, Investor, Message, Profile
from policies import (
    can_create_conversation, can_mark_read, can_send_message, can_view_conversation,
    require, visible_conversations
)
from schemas import ConversationCreate, ConversationOut, MessageCreate, MessageOut, PartnerOut
from websocket_manager import manager as ws_manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/conversations", tags=["messaging"])

VERIFICATION_REQUIRED = "You must be verified to access the messaging feature"


def require_verified_party(profile: Profile):
    require(profile.is_verified and profile.user_type in ("institution", "investor"), VERIFICATION_REQUIRED)


def conversation_view(conversation: Conversation, viewer: Profile, unread_count: int = 0) -> ConversationOut:
    viewer_is_institution = conversation.institution.user_id == viewer.id
    return ConversationOut(
        id=conversation.id,
        institution_id=conversation.institution_id,
        investor_id=conversation.investor_id,
        other_party_name=(
            conversation.investor.display_name if viewer_is_institution
            else conversation.institution.institution_name
        ),
        other_party_type="investor" if viewer_is_institution else "institution",
        unread_count=unread_count,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
    )


def message_view(message: Message) -> MessageOut:
    return MessageOut(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        sender_name=message.sender.full_name if message.sender else None,
        content=message.content,
        read=bool(message.read),
        created_at=message.created_at,
    )


def load_conversation(db: Session, conversation_id: str, viewer: Profile) -> Conversation:
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    # Conversations the viewer may not see are reported as missing
    if not conversation or not can_view_conversation(viewer, conversation):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return conversation


@router.get("", response_model=List[ConversationOut])
async def list_conversations(
    search: Optional[str] = None,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    """The caller's conversations, most recently active first."""
    require_verified_party(profile)

    conversations = visible_conversations(db, profile).order_by(Conversation.updated_at.desc()).all()

    unread = dict(
        db.query(Message.conversation_id, func.count(Message.id))
        .filter(
            Message.conversation_id.in_([c.id for c in conversations]),
            Message.sender_id != profile.id,
            Message.read.is_(False)
        )
        .group_by(Message.conversation_id)
        .all()
    ) if conversations else {}

    result = [conversation_view(c, profile, unread.get(c.id, 0)) for c in conversations]
    if search:
        needle = search.strip().lower()
        result = [c for c in result if needle in c.other_party_name.lower()]
    return result


@router.get("/partners", response_model=List[PartnerOut])
async def available_partners(profile: Profile = Depends(get_current_profile), db: Session = Depends(get_db)):
    """Verified counterparties the caller can start a conversation with."""
    require_verified_party(profile)

    if profile.user_type == "investor":
        institutions = (
            db.query(Institution)
            .join(Profile, Institution.user_id == Profile.id)
            .filter(Profile.verification_status == "verified", Institution.user_id != profile.id)
            .order_by(Institution.institution_name)
            .all()
        )
        return [PartnerOut(id=i.id, name=i.institution_name, type="institution") for i in institutions]

    investors = (
        db.query(Investor)
        .join(Profile, Investor.user_id == Profile.id)
        .filter(Profile.verification_status == "verified", Investor.user_id != profile.id)
        .order_by(Investor.created_at.desc())
        .all()
    )
    return [PartnerOut(id=i.id, name=i.display_name, type="investor") for i in investors]


@router.post("", response_model=ConversationOut, status_code=status.HTTP_201_CREATED)
async def open_conversation(
    payload: ConversationCreate,
    response: Response,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    """Open the conversation with a partner, creating it on first contact."""
    require_verified_party(profile)

    if profile.user_type == "investor":
        investor = db.query(Investor).filter(Investor.user_id == profile.id).first()
        institution = db.query(Institution).filter(Institution.id == payload.partner_id).first()
    else:
        institution = db.query(Institution).filter(Institution.user_id == profile.id).first()
        investor = db.query(Investor).filter(Investor.id == payload.partner_id).first()

    if investor is None or institution is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Partner not found")

    existing = db.query(Conversation).filter(
        Conversation.institution_id == institution.id,
        Conversation.investor_id == investor.id
    ).first()
    if existing:
        response.status_code = status.HTTP_200_OK
        return conversation_view(existing, profile)

    require(can_create_conversation(profile, institution, investor),
            "Both parties must be verified to start a conversation")

    conversation = Conversation(institution_id=institution.id, investor_id=investor.id)
    db.add(conversation)
    try:
        db.commit()
    except IntegrityError:
        # Created concurrently by the other party
        db.rollback()
        response.status_code = status.HTTP_200_OK
        conversation = db.query(Conversation).filter(
            Conversation.institution_id == institution.id,
            Conversation.investor_id == investor.id
        ).one()
        return conversation_view(conversation, profile)

    db.refresh(conversation)
    logger.info(f"Conversation {conversation.id} opened between {institution.id} and {investor.id}")
    return conversation_view(conversation, profile)


@router.get("/{conversation_id}/messages", response_model=List[MessageOut])
async def list_messages(
    conversation_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    load_conversation(db, conversation_id, profile)
    messages = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.asc())
        .all()
    )
    return [message_view(m) for m in messages]


@router.post("/{conversation_id}/messages", response_model=MessageOut, status_code=status.HTTP_201_CREATED)
async def send_message(
    conversation_id: str,
    payload: MessageCreate,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    conversation = load_conversation(db, conversation_id, profile)
    require(can_send_message(profile, conversation, profile.id))

    message = Message(conversation_id=conversation.id, sender_id=profile.id, content=payload.content)
    db.add(message)
    db.commit()
    db.refresh(message)

    result = message_view(message)
    await ws_manager.broadcast_new_message(result.model_dump(mode="json"))
    return result


@router.put("/{conversation_id}/read")
async def mark_read(
    conversation_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db)
):
    """Mark the other party's messages in a conversation as read."""
    conversation = load_conversation(db, conversation_id, profile)
    require(can_mark_read(profile, conversation))

    updated = (
        db.query(Message)
        .filter(
            Message.conversation_id == conversation.id,
            Message.sender_id != profile.id,
            Message.read.is_(False)
        )
        .update({Message.read: True}, synchronize_session=False)
    )
    db.commit()

    if updated:
        await ws_manager.broadcast_messages_read(conversation.id, profile.id, updated)
    return {"success": True, "updated": updated}
