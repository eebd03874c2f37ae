from __future__ import annotations

from dataclasses import replace

import pytest

from santachain import create_app
from santachain.extensions import db, score_client
from santachain.services.matching import ChainRecord, ParticipantRecord


@pytest.fixture
def app():
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "SECRET_KEY": "test-secret",
        "NEYNAR_API_KEY": "test-key",
        "ASSIGNMENT_ENC_KEY": "",
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def neynar_scores(monkeypatch):
    """fid -> score. Unlisted fids score 0.9; None means unknown to Neynar."""
    scores: dict[int, float | None] = {}

    def fake_fetch_user(fid):
        score = scores.get(fid, 0.9)
        if score is None:
            return None
        return {
            "fid": fid,
            "username": f"user{fid}",
            "display_name": f"User {fid}",
            "pfp_url": f"https://example.com/{fid}.png",
            "custody_address": "0x" + "0" * 40,
            "experimental": {"neynar_user_score": score},
        }

    monkeypatch.setattr(score_client, "fetch_user", fake_fetch_user)
    return scores


@pytest.fixture
def login(app):
    def _login(fid: int):
        c = app.test_client()
        resp = c.post("/api/auth/session", json={"fid": fid})
        assert resp.status_code == 200, resp.get_json()
        return c
    return _login


class FakeChainStore:
    def __init__(self):
        self.chains: dict[str, ChainRecord] = {}
        self.fail_status_write = False
        # Status another actor moves the chain to just before our compare-and-swap.
        self.hijack_status: str | None = None

    def add(self, chain_id: str, status: str = "matching", min_participants: int = 2, max_participants: int = 50):
        self.chains[chain_id] = ChainRecord(chain_id, status, min_participants, max_participants)

    def status(self, chain_id: str) -> str:
        return self.chains[chain_id].status

    def get_chain(self, chain_id):
        return self.chains.get(chain_id)

    def set_chain_status(self, chain_id, status):
        self.chains[chain_id] = replace(self.chains[chain_id], status=status)

    def set_chain_status_if(self, chain_id, expected, status):
        if self.fail_status_write:
            raise RuntimeError("chain store unavailable")
        if self.hijack_status:
            self.set_chain_status(chain_id, self.hijack_status)
        if self.chains[chain_id].status != expected:
            return False
        self.set_chain_status(chain_id, status)
        return True


class FakeParticipantStore:
    def __init__(self):
        self.rows: dict[tuple[str, int], dict] = {}
        self.assignment_writes = 0
        self.fail_on_write: int | None = None
        self.before_write = None

    def add(self, chain_id: str, *fids: int):
        for fid in fids:
            self.rows[(chain_id, fid)] = {"recipient": None, "sent": False}

    def recipients(self, chain_id: str) -> dict[int, int | None]:
        return {fid: row["recipient"] for (cid, fid), row in self.rows.items() if cid == chain_id}

    def list_participants(self, chain_id):
        return [fid for (cid, fid) in self.rows if cid == chain_id]

    def get_participant(self, chain_id, fid):
        row = self.rows.get((chain_id, fid))
        if row is None:
            return None
        return ParticipantRecord(fid, row["recipient"], row["sent"])

    def set_assigned_recipient(self, chain_id, fid, recipient_fid):
        if recipient_fid is not None:
            self.assignment_writes += 1
            if self.before_write:
                self.before_write()
            if self.assignment_writes == self.fail_on_write:
                raise RuntimeError("participant store unavailable")
        if (chain_id, fid) not in self.rows:
            return False
        self.rows[(chain_id, fid)]["recipient"] = recipient_fid
        return True


@pytest.fixture
def chain_store():
    return FakeChainStore()


@pytest.fixture
def participant_store():
    return FakeParticipantStore()
