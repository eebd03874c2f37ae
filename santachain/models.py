import uuid
from datetime import datetime, timezone

from flask_login import UserMixin

from .extensions import db, login_manager
from .services.lifecycle import OPEN


def utcnow() -> datetime:
    # Naive UTC, matching what SQLite hands back.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uuid() -> str:
    return str(uuid.uuid4())


GIFT_TYPES = ("crypto", "nft", "message")
CURRENCIES = ("ETH", "USDC")


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    fid = db.Column(db.BigInteger, unique=True, nullable=False)
    username = db.Column(db.String(64), nullable=True)
    display_name = db.Column(db.String(128), nullable=True)
    pfp_url = db.Column(db.Text, nullable=True)
    custody_address = db.Column(db.String(64), nullable=True)
    neynar_score = db.Column(db.Float, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def profile(self) -> dict:
        return {
            "fid": self.fid,
            "username": self.username,
            "display_name": self.display_name,
            "pfp_url": self.pfp_url,
        }


class GiftChain(db.Model):
    __tablename__ = "gift_chains"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500), nullable=True)
    creator_fid = db.Column(db.BigInteger, db.ForeignKey("users.fid"), nullable=False)

    min_amount = db.Column(db.Float, nullable=False)
    max_amount = db.Column(db.Float, nullable=False)
    currency = db.Column(db.String(8), default="ETH", nullable=False)

    min_participants = db.Column(db.Integer, default=3, nullable=False)
    max_participants = db.Column(db.Integer, default=50, nullable=False)

    join_deadline = db.Column(db.DateTime, nullable=False)
    reveal_date = db.Column(db.DateTime, nullable=False)

    status = db.Column(db.String(16), default=OPEN, nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    creator = db.relationship("User", foreign_keys=[creator_fid])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description or "",
            "creator_fid": self.creator_fid,
            "min_amount": self.min_amount,
            "max_amount": self.max_amount,
            "currency": self.currency,
            "min_participants": self.min_participants,
            "max_participants": self.max_participants,
            "join_deadline": self.join_deadline.isoformat(),
            "reveal_date": self.reveal_date.isoformat(),
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class ChainParticipant(db.Model):
    __tablename__ = "chain_participants"

    id = db.Column(db.Integer, primary_key=True)
    chain_id = db.Column(db.String(36), db.ForeignKey("gift_chains.id", ondelete="CASCADE"), nullable=False, index=True)
    user_fid = db.Column(db.BigInteger, db.ForeignKey("users.fid"), nullable=False)

    # Encrypted recipient fid (Fernet token). Never stored in plaintext.
    assigned_recipient_ciphertext = db.Column(db.Text, nullable=True)

    has_sent_gift = db.Column(db.Boolean, default=False, nullable=False)
    joined_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    user = db.relationship("User", foreign_keys=[user_fid])
    chain = db.relationship("GiftChain")

    __table_args__ = (
        db.UniqueConstraint("chain_id", "user_fid", name="uq_chain_participant"),
    )


class Gift(db.Model):
    __tablename__ = "gifts"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    chain_id = db.Column(db.String(36), db.ForeignKey("gift_chains.id", ondelete="CASCADE"), nullable=False, index=True)
    sender_fid = db.Column(db.BigInteger, db.ForeignKey("users.fid"), nullable=False)
    recipient_fid = db.Column(db.BigInteger, db.ForeignKey("users.fid"), nullable=False)

    gift_type = db.Column(db.String(16), nullable=False)
    amount = db.Column(db.Float, nullable=True)
    currency = db.Column(db.String(8), nullable=True)
    token_address = db.Column(db.String(64), nullable=True)
    token_id = db.Column(db.String(128), nullable=True)
    message = db.Column(db.String(500), nullable=True)
    tx_hash = db.Column(db.String(128), nullable=True)

    is_revealed = db.Column(db.Boolean, default=False, nullable=False)
    sent_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    revealed_at = db.Column(db.DateTime, nullable=True)

    sender = db.relationship("User", foreign_keys=[sender_fid])
    recipient = db.relationship("User", foreign_keys=[recipient_fid])
    chain = db.relationship("GiftChain")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "chain_id": self.chain_id,
            "sender_fid": self.sender_fid,
            "recipient_fid": self.recipient_fid,
            "gift_type": self.gift_type,
            "amount": self.amount,
            "currency": self.currency,
            "token_address": self.token_address,
            "token_id": self.token_id,
            "message": self.message,
            "tx_hash": self.tx_hash,
            "is_revealed": self.is_revealed,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "revealed_at": self.revealed_at.isoformat() if self.revealed_at else None,
        }


@login_manager.user_loader
def load_user(user_id: str):
    return db.session.get(User, int(user_id))
