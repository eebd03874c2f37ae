from datetime import timedelta

import pytest

from santachain.errors import Conflict
from santachain.extensions import db
from santachain.models import ChainParticipant, GiftChain, User, utcnow
from santachain.security import decrypt_recipient, encrypt_recipient
from santachain.services.chains import check_all_gifts_sent, get_assigned_recipient, get_chain_stats, reveal_chain
from santachain.services.matching import MatchingAlreadyComplete
from santachain.services.stores import (
    SqlChainStore,
    SqlParticipantStore,
    build_matching_engine,
    sql_transaction,
)


def _seed_chain(fids, status="matching"):
    for fid in fids:
        db.session.add(User(fid=fid, username=f"user{fid}"))
    chain = GiftChain(
        name="Office",
        creator_fid=fids[0],
        min_amount=1,
        max_amount=5,
        min_participants=2,
        max_participants=10,
        join_deadline=utcnow() + timedelta(days=1),
        reveal_date=utcnow() + timedelta(days=2),
        status=status,
    )
    db.session.add(chain)
    db.session.flush()
    for fid in fids:
        db.session.add(ChainParticipant(chain_id=chain.id, user_fid=fid))
    db.session.commit()
    return chain.id


def test_encryption_round_trip(app):
    with app.app_context():
        token = encrypt_recipient(1234)
        assert "1234" not in token
        assert decrypt_recipient(token) == 1234
        with pytest.raises(ValueError):
            decrypt_recipient("not-a-token")


def test_explicit_encryption_key(app):
    from cryptography.fernet import Fernet

    app.config["ASSIGNMENT_ENC_KEY"] = Fernet.generate_key().decode()
    with app.app_context():
        token = encrypt_recipient(7)
        assert decrypt_recipient(token) == 7
        app.config["ASSIGNMENT_ENC_KEY"] = ""
        with pytest.raises(ValueError):
            decrypt_recipient(token)


def test_participant_store_encrypts_assignments(app):
    with app.app_context():
        chain_id = _seed_chain([1, 2, 3])
        store = SqlParticipantStore()

        assert store.list_participants(chain_id) == [1, 2, 3]
        assert store.set_assigned_recipient(chain_id, 1, 2) is True
        db.session.commit()

        row = ChainParticipant.query.filter_by(chain_id=chain_id, user_fid=1).one()
        assert row.assigned_recipient_ciphertext
        assert row.assigned_recipient_ciphertext != "2"

        record = store.get_participant(chain_id, 1)
        assert record.assigned_recipient_fid == 2
        assert record.has_sent_gift is False
        assert store.get_participant(chain_id, 99) is None
        assert store.set_assigned_recipient(chain_id, 99, 1) is False


def test_chain_store_compare_and_swap(app):
    with app.app_context():
        chain_id = _seed_chain([1, 2], status="open")
        store = SqlChainStore()

        assert store.set_chain_status_if(chain_id, "open", "matching") is True
        assert store.set_chain_status_if(chain_id, "open", "matching") is False
        db.session.commit()
        assert store.get_chain(chain_id).status == "matching"
        assert store.get_chain("missing") is None


def test_sql_transaction_rolls_back(app):
    with app.app_context():
        chain_id = _seed_chain([1, 2], status="open")
        store = SqlChainStore()

        with pytest.raises(RuntimeError):
            with sql_transaction():
                store.set_chain_status(chain_id, "matching")
                raise RuntimeError("boom")

        assert store.get_chain(chain_id).status == "open"


def test_engine_against_sql_stores(app):
    with app.app_context():
        chain_id = _seed_chain([11, 12, 13, 14])
        engine = build_matching_engine()

        result = engine.run_matching(chain_id)
        db.session.remove()

        participants = SqlParticipantStore()
        stored = {fid: participants.get_participant(chain_id, fid).assigned_recipient_fid for fid in [11, 12, 13, 14]}
        assert stored == result.assignments
        assert SqlChainStore().get_chain(chain_id).status == "active"

        with pytest.raises(MatchingAlreadyComplete):
            build_matching_engine().run_matching(chain_id)


def test_chain_helpers(app):
    with app.app_context():
        chain_id = _seed_chain([21, 22])
        assert get_assigned_recipient(chain_id, 21) is None
        assert check_all_gifts_sent(chain_id) is False

        result = build_matching_engine().run_matching(chain_id)
        assert get_assigned_recipient(chain_id, 21) == result.assignments[21] == 22
        assert get_assigned_recipient(chain_id, 99) is None

        ChainParticipant.query.filter_by(chain_id=chain_id).update({"has_sent_gift": True})
        db.session.commit()
        assert check_all_gifts_sent(chain_id) is True
        assert get_chain_stats(chain_id)["completionPercentage"] == 100
        assert check_all_gifts_sent("missing") is False


def test_compare_and_swap_matches_legacy_status(app):
    with app.app_context():
        chain_id = _seed_chain([1, 2], status="revealed")
        store = SqlChainStore()

        assert store.get_chain(chain_id).status == "revealing"
        assert store.set_chain_status_if(chain_id, "revealing", "completed") is True
        db.session.commit()
        assert store.get_chain(chain_id).status == "completed"


def test_reveal_conflicts_when_completion_is_lost(monkeypatch, app):
    original = SqlChainStore.set_chain_status_if

    def lose_completion(self, chain_id, expected, status):
        if status == "completed":
            return False
        return original(self, chain_id, expected, status)

    monkeypatch.setattr(SqlChainStore, "set_chain_status_if", lose_completion)
    with app.app_context():
        chain_id = _seed_chain([1, 2], status="active")

        with pytest.raises(Conflict):
            reveal_chain(chain_id, now=utcnow() + timedelta(days=3))

        assert SqlChainStore().get_chain(chain_id).status == "active"
