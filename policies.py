"""
Row-level authorization policies.

Every read and write goes through these predicates. The rules:

- profiles: visible to their owner and to admins; only admins change
  verification status.
- institutions: visible to their owner, to verified investors and to admins.
- investors: visible to their owner, to verified institutions and to admins.
- conversations and messages: visible only to a *verified* party of the
  conversation. Creating one requires both parties to be verified and the
  caller to be one of them.
- donations: visible to admins, the donating investor and the receiving
  institution; created by the donating investor or an admin; updated and
  deleted by admins only.
- certificates: the first storage path segment is the owner's profile id;
  readable by the owner and by admins.
"""

from fastapi import HTTPException, status
from sqlalchemy import false, or_
from sqlalchemy.orm import Query, Session

from models import (
    Profile, UserRole, Institution, Investor, Conversation, Donation
)

MESSAGES_CHANNEL_PREFIX = "messages:"


def require(allowed: bool, detail: str = "Not permitted"):
    """Raise 403 unless `allowed`."""
    if not allowed:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def has_role(db: Session, profile: Profile, role: str) -> bool:
    """A role is held through the profile's user_type or an explicit grant."""
    if profile is None:
        return False
    if profile.user_type == role:
        return True
    grant = db.query(UserRole.id).filter(
        UserRole.user_id == profile.id,
        UserRole.role == role
    ).first()
    return grant is not None


def is_admin(db: Session, profile: Profile) -> bool:
    return has_role(db, profile, "admin")


def resolve_role(db: Session, profile: Profile) -> str:
    return "admin" if is_admin(db, profile) else profile.user_type


def is_verified_as(profile: Profile, user_type: str) -> bool:
    return profile.user_type == user_type and profile.is_verified


# Profiles

def can_view_profile(db: Session, viewer: Profile, target: Profile) -> bool:
    return viewer.id == target.id or is_admin(db, viewer)


def can_set_verification(db: Session, viewer: Profile) -> bool:
    return is_admin(db, viewer)


# Institutions and investors

def can_view_institution(db: Session, viewer: Profile, institution: Institution) -> bool:
    return (
        institution.user_id == viewer.id
        or is_verified_as(viewer, "investor")
        or is_admin(db, viewer)
    )


def can_update_institution(db: Session, viewer: Profile, institution: Institution) -> bool:
    return institution.user_id == viewer.id or is_admin(db, viewer)


def can_view_investor(db: Session, viewer: Profile, investor: Investor) -> bool:
    return (
        investor.user_id == viewer.id
        or is_verified_as(viewer, "institution")
        or is_admin(db, viewer)
    )


def can_update_investor(db: Session, viewer: Profile, investor: Investor) -> bool:
    return investor.user_id == viewer.id or is_admin(db, viewer)


def visible_institutions(db: Session, viewer: Profile) -> Query:
    query = db.query(Institution)
    if is_admin(db, viewer) or is_verified_as(viewer, "investor"):
        return query
    return query.filter(Institution.user_id == viewer.id)


def visible_investors(db: Session, viewer: Profile) -> Query:
    query = db.query(Investor)
    if is_admin(db, viewer) or is_verified_as(viewer, "institution"):
        return query
    return query.filter(Investor.user_id == viewer.id)


# Conversations and messages

def is_institution_in_conversation(viewer: Profile, conversation: Conversation) -> bool:
    return viewer.is_verified and conversation.institution.user_id == viewer.id


def is_investor_in_conversation(viewer: Profile, conversation: Conversation) -> bool:
    return viewer.is_verified and conversation.investor.user_id == viewer.id


def can_view_conversation(viewer: Profile, conversation: Conversation) -> bool:
    return (
        is_institution_in_conversation(viewer, conversation)
        or is_investor_in_conversation(viewer, conversation)
    )


def can_create_conversation(viewer: Profile, institution: Institution, investor: Investor) -> bool:
    return (
        institution.profile.is_verified
        and investor.profile.is_verified
        and viewer.id in (institution.user_id, investor.user_id)
    )


def can_send_message(viewer: Profile, conversation: Conversation, sender_id: str) -> bool:
    return sender_id == viewer.id and can_view_conversation(viewer, conversation)


# Read receipts use the same participation check as reads
can_mark_read = can_view_conversation


def visible_conversations(db: Session, viewer: Profile) -> Query:
    query = (
        db.query(Conversation)
        .join(Institution, Conversation.institution_id == Institution.id)
        .join(Investor, Conversation.investor_id == Investor.id)
    )
    if not viewer.is_verified:
        return query.filter(false())
    return query.filter(or_(Institution.user_id == viewer.id, Investor.user_id == viewer.id))


# Donations

def can_view_donation(db: Session, viewer: Profile, donation: Donation) -> bool:
    return (
        donation.investor.user_id == viewer.id
        or donation.institution.user_id == viewer.id
        or is_admin(db, viewer)
    )


def can_create_donation(db: Session, viewer: Profile, investor: Investor) -> bool:
    return investor.user_id == viewer.id or is_admin(db, viewer)


def can_manage_donation(db: Session, viewer: Profile) -> bool:
    return is_admin(db, viewer)


def visible_donations(db: Session, viewer: Profile) -> Query:
    query = db.query(Donation)
    if is_admin(db, viewer):
        return query
    return (
        query
        .join(Investor, Donation.investor_id == Investor.id)
        .join(Institution, Donation.institution_id == Institution.id)
        .filter(or_(Investor.user_id == viewer.id, Institution.user_id == viewer.id))
    )


# Roles

def can_view_roles(db: Session, viewer: Profile, user_id: str) -> bool:
    return viewer.id == user_id or is_admin(db, viewer)


def can_manage_roles(db: Session, viewer: Profile) -> bool:
    return is_admin(db, viewer)


# Certificates

def certificate_owner(path: str) -> str:
    return path.split("/", 1)[0] if path else ""


def can_access_certificate(db: Session, viewer: Profile, path: str) -> bool:
    return certificate_owner(path) == viewer.id or is_admin(db, viewer)


# Realtime channels

def can_subscribe(db: Session, viewer: Profile, channel: str) -> bool:
    """Whether `viewer` may receive change events published on `channel`."""
    if channel.startswith(MESSAGES_CHANNEL_PREFIX):
        conversation_id = channel[len(MESSAGES_CHANNEL_PREFIX):]
        conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
        return conversation is not None and can_view_conversation(viewer, conversation)
    if channel == "profiles" or channel == "donations":
        return is_admin(db, viewer)
    if channel == "institutions":
        return is_verified_as(viewer, "investor") or is_admin(db, viewer)
    if channel == "investors":
        return is_verified_as(viewer, "institution") or is_admin(db, viewer)
    return False
