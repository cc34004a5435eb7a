from models import Conversation, Donation, Institution, Investor, Profile, UserRole
from policies import (
    can_access_certificate, can_create_conversation, can_send_message, can_subscribe,
    can_view_conversation, can_view_institution, can_view_investor, has_role,
    resolve_role, visible_conversations, visible_donations
)


def _profile(db, account):
    return db.query(Profile).filter(Profile.id == account.id).one()


def _conversation(db, institution_account, investor_account):
    conversation = Conversation(institution_id=institution_account.entity_id,
                                investor_id=investor_account.entity_id)
    db.add(conversation)
    db.commit()
    return conversation


def test_has_role_through_user_type_or_grant(db, make_account):
    admin = make_account("admin", register=False)
    investor = make_account("investor")

    assert has_role(db, _profile(db, admin), "admin")
    assert not has_role(db, _profile(db, investor), "admin")

    db.add(UserRole(user_id=investor.id, role="admin"))
    db.commit()

    assert has_role(db, _profile(db, investor), "admin")
    assert resolve_role(db, _profile(db, investor)) == "admin"


def test_directory_visibility_depends_on_verification(db, make_account):
    institution = make_account("institution")
    verified_investor = make_account("investor")
    pending_investor = make_account("investor", status="pending")
    other_institution = make_account("institution")

    row = db.query(Institution).filter(Institution.id == institution.entity_id).one()
    assert can_view_institution(db, _profile(db, institution), row)
    assert can_view_institution(db, _profile(db, verified_investor), row)
    assert not can_view_institution(db, _profile(db, pending_investor), row)
    assert not can_view_institution(db, _profile(db, other_institution), row)

    investor_row = db.query(Investor).filter(Investor.id == pending_investor.entity_id).one()
    assert can_view_investor(db, _profile(db, institution), investor_row)
    assert not can_view_investor(db, _profile(db, verified_investor), investor_row)


def test_conversation_creation_needs_both_parties_verified(db, make_account):
    institution = make_account("institution")
    investor = make_account("investor")
    pending_investor = make_account("investor", status="pending")

    inst_row = db.query(Institution).filter(Institution.id == institution.entity_id).one()
    inv_row = db.query(Investor).filter(Investor.id == investor.entity_id).one()
    pending_row = db.query(Investor).filter(Investor.id == pending_investor.entity_id).one()

    assert can_create_conversation(_profile(db, investor), inst_row, inv_row)
    assert can_create_conversation(_profile(db, institution), inst_row, inv_row)
    assert not can_create_conversation(_profile(db, institution), inst_row, pending_row)
    # A verified outsider cannot create a conversation for two others
    outsider = make_account("investor")
    assert not can_create_conversation(_profile(db, outsider), inst_row, inv_row)


def test_unverified_participant_loses_access(db, make_account):
    institution = make_account("institution")
    investor = make_account("investor")
    conversation = _conversation(db, institution, investor)

    investor_profile = _profile(db, investor)
    assert can_view_conversation(investor_profile, conversation)
    assert can_send_message(investor_profile, conversation, investor.id)
    assert not can_send_message(investor_profile, conversation, institution.id)

    investor_profile.verification_status = "rejected"
    db.commit()

    assert not can_view_conversation(investor_profile, conversation)
    assert visible_conversations(db, investor_profile).count() == 0
    assert visible_conversations(db, _profile(db, institution)).count() == 1


def test_visible_donations_scoped_to_parties(db, make_account):
    institution = make_account("institution")
    other_institution = make_account("institution")
    investor = make_account("investor")
    admin = make_account("admin", register=False)

    db.add_all([
        Donation(investor_id=investor.entity_id, institution_id=institution.entity_id, amount=50),
        Donation(investor_id=investor.entity_id, institution_id=other_institution.entity_id, amount=20),
    ])
    db.commit()

    assert visible_donations(db, _profile(db, investor)).count() == 2
    assert visible_donations(db, _profile(db, institution)).count() == 1
    assert visible_donations(db, _profile(db, admin)).count() == 2


def test_certificate_access_by_folder_owner(db, make_account):
    investor = make_account("investor")
    other = make_account("investor")
    admin = make_account("admin", register=False)
    path = f"{investor.id}/certificate.pdf"

    assert can_access_certificate(db, _profile(db, investor), path)
    assert not can_access_certificate(db, _profile(db, other), path)
    assert can_access_certificate(db, _profile(db, admin), path)


def test_channel_subscriptions(db, make_account):
    institution = make_account("institution")
    investor = make_account("investor")
    outsider = make_account("investor")
    admin = make_account("admin", register=False)
    conversation = _conversation(db, institution, investor)
    channel = f"messages:{conversation.id}"

    assert can_subscribe(db, _profile(db, investor), channel)
    assert not can_subscribe(db, _profile(db, outsider), channel)
    assert not can_subscribe(db, _profile(db, admin), channel)
    assert can_subscribe(db, _profile(db, admin), "profiles")
    assert not can_subscribe(db, _profile(db, investor), "profiles")
    assert can_subscribe(db, _profile(db, investor), "institutions")
    assert not can_subscribe(db, _profile(db, investor), "investors")
    assert not can_subscribe(db, _profile(db, investor), "unknown")
