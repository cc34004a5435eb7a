from sqlalchemy import (
    Column, String, DateTime, Boolean, Text, Numeric, ForeignKey,
    CheckConstraint, UniqueConstraint, event
)
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid

# Import Base from database module to ensure consistency
from database import Base

USER_TYPES = ("institution", "investor", "admin")
VERIFICATION_STATUSES = ("pending", "verified", "rejected")
INVESTOR_TYPES = ("individual", "corporate", "foundation", "ngo")
DONATION_STATUSES = ("pending", "completed", "cancelled", "failed")
APP_ROLES = ("admin", "institution", "investor")


def _uuid() -> str:
    return str(uuid.uuid4())


def _in_check(column: str, values) -> str:
    return "{} IN ({})".format(column, ", ".join("'{}'".format(v) for v in values))


class Profile(Base):
    __tablename__ = "profiles"
    __table_args__ = (
        CheckConstraint(_in_check("user_type", USER_TYPES), name="ck_profiles_user_type"),
        CheckConstraint(_in_check("verification_status", VERIFICATION_STATUSES), name="ck_profiles_verification_status"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    full_name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    user_type = Column(String, nullable=False)
    verification_status = Column(String, nullable=False, default="pending")
    is_active = Column(Boolean, default=True)
    reviewed_at = Column(DateTime, nullable=True)
    reviewed_by = Column(String, nullable=True)  # Email of the admin who last changed verification
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    institution = relationship("Institution", back_populates="profile", uselist=False,
                               cascade="all, delete-orphan", passive_deletes=True)
    investor = relationship("Investor", back_populates="profile", uselist=False,
                            cascade="all, delete-orphan", passive_deletes=True)
    roles = relationship("UserRole", back_populates="profile",
                         cascade="all, delete-orphan", passive_deletes=True)

    @property
    def is_verified(self) -> bool:
        return self.verification_status == "verified"


class UserRole(Base):
    __tablename__ = "user_roles"
    __table_args__ = (
        UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),
        CheckConstraint(_in_check("role", APP_ROLES), name="ck_user_roles_role"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    profile = relationship("Profile", back_populates="roles")


class Institution(Base):
    __tablename__ = "institutions"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), unique=True, nullable=False)
    institution_name = Column(String, nullable=False)
    country = Column(String, nullable=False)
    city = Column(String, nullable=False)
    address = Column(String, nullable=False)
    contact_person = Column(String, nullable=False)
    contact_position = Column(String, nullable=True)
    certificate_url = Column(String, nullable=True)  # Storage path: <user_id>/<file>
    created_at = Column(DateTime, default=datetime.utcnow)

    profile = relationship("Profile", back_populates="institution")
    conversations = relationship("Conversation", back_populates="institution",
                                 cascade="all, delete-orphan", passive_deletes=True)
    donations = relationship("Donation", back_populates="institution",
                             cascade="all, delete-orphan", passive_deletes=True)


class Investor(Base):
    __tablename__ = "investors"
    __table_args__ = (
        CheckConstraint(_in_check("investor_type", INVESTOR_TYPES), name="ck_investors_investor_type"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), unique=True, nullable=False)
    investor_type = Column(String, nullable=False)
    company_name = Column(String, nullable=True)
    certificate_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    profile = relationship("Profile", back_populates="investor")
    conversations = relationship("Conversation", back_populates="investor",
                                 cascade="all, delete-orphan", passive_deletes=True)
    donations = relationship("Donation", back_populates="investor",
                             cascade="all, delete-orphan", passive_deletes=True)

    @property
    def display_name(self) -> str:
        return self.company_name or f"{self.investor_type} Investor"


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("institution_id", "investor_id", name="uq_conversations_pair"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    institution_id = Column(String(36), ForeignKey("institutions.id", ondelete="CASCADE"), nullable=False, index=True)
    investor_id = Column(String(36), ForeignKey("investors.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    institution = relationship("Institution", back_populates="conversations")
    investor = relationship("Investor", back_populates="conversations")
    messages = relationship("Message", back_populates="conversation",
                            cascade="all, delete-orphan", passive_deletes=True)


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint("length(content) > 0", name="ck_messages_content_not_empty"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    conversation_id = Column(String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    sender_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    content = Column(Text, nullable=False)
    read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    conversation = relationship("Conversation", back_populates="messages")
    sender = relationship("Profile")


class Donation(Base):
    __tablename__ = "donations"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_donations_amount_positive"),
        CheckConstraint(_in_check("status", DONATION_STATUSES), name="ck_donations_status"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    investor_id = Column(String(36), ForeignKey("investors.id", ondelete="CASCADE"), nullable=False, index=True)
    institution_id = Column(String(36), ForeignKey("institutions.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Numeric(12, 2, asdecimal=False), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String, nullable=False, default="pending")
    donation_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    investor = relationship("Investor", back_populates="donations")
    institution = relationship("Institution", back_populates="donations")


@event.listens_for(Message, "after_insert")
def touch_conversation(mapper, connection, target):
    """Bump the parent conversation's updated_at whenever a message lands in it."""
    conversations = Conversation.__table__
    connection.execute(
        conversations.update()
        .where(conversations.c.id == target.conversation_id)
        .values(updated_at=datetime.utcnow())
    )
