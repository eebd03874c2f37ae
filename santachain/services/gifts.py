from __future__ import annotations

import logging

from ..errors import BadRequest, Conflict, Forbidden
from ..extensions import db
from ..models import ChainParticipant, Gift
from .chains import get_chain_or_404, gift_with_people
from .lifecycle import ACTIVE, normalize_status
from .stores import SqlParticipantStore

logger = logging.getLogger(__name__)

ANONYMOUS_SENDER = {
    "fid": None,
    "username": "???",
    "display_name": "Secret Santa",
    "pfp_url": "/icon.png",
}


def send_gift(
    sender_fid: int,
    chain_id: str,
    recipient_fid: int,
    gift_type: str,
    *,
    amount: float | None = None,
    currency: str | None = None,
    token_address: str | None = None,
    token_id: str | None = None,
    message: str | None = None,
    tx_hash: str | None = None,
) -> Gift:
    chain = get_chain_or_404(chain_id)
    if normalize_status(chain.status) != ACTIVE:
        raise BadRequest("Chain is not active for gifting")

    participant = SqlParticipantStore().get_participant(chain.id, sender_fid)
    if not participant:
        raise Forbidden("You are not a participant in this chain")
    if participant.assigned_recipient_fid != recipient_fid:
        raise Forbidden("You are not assigned to gift this recipient")
    if participant.has_sent_gift:
        raise BadRequest("You have already sent a gift in this chain")

    if gift_type == "crypto" and amount is not None:
        if amount < chain.min_amount or amount > chain.max_amount:
            raise BadRequest(
                f"Gift amount must be between {chain.min_amount} and {chain.max_amount} {chain.currency}"
            )

    # Flip the flag conditionally so two concurrent sends cannot both land.
    claimed = ChainParticipant.query.filter_by(
        chain_id=chain.id, user_fid=sender_fid, has_sent_gift=False
    ).update({"has_sent_gift": True}, synchronize_session=False)
    if claimed != 1:
        db.session.rollback()
        raise Conflict("You have already sent a gift in this chain")

    gift = Gift(
        chain_id=chain.id,
        sender_fid=sender_fid,
        recipient_fid=recipient_fid,
        gift_type=gift_type,
        amount=amount,
        currency=currency or chain.currency,
        token_address=token_address,
        token_id=token_id,
        message=message,
        tx_hash=tx_hash,
        is_revealed=False,
    )
    db.session.add(gift)
    db.session.commit()

    logger.info("Gift %s sent in chain %s", gift.id, chain.id)
    return gift


def list_user_gifts(fid: int, kind: str = "all", chain_id: str | None = None) -> list[dict]:
    q = Gift.query
    if chain_id:
        q = q.filter(Gift.chain_id == chain_id)
    if kind == "sent":
        q = q.filter(Gift.sender_fid == fid)
    elif kind == "received":
        q = q.filter(Gift.recipient_fid == fid)
    else:
        q = q.filter((Gift.sender_fid == fid) | (Gift.recipient_fid == fid))

    out = []
    for gift in q.order_by(Gift.sent_at.desc()).all():
        data = gift_with_people(gift)
        data["chain"] = {
            "id": gift.chain.id,
            "name": gift.chain.name,
            "status": normalize_status(gift.chain.status),
            "reveal_date": gift.chain.reveal_date.isoformat(),
        }
        # Hide the sender until reveal.
        if not gift.is_revealed and gift.recipient_fid == fid:
            data["sender"] = None
            data["sender_fid"] = None
        out.append(data)
    return out


def gift_log(chain_id: str | None = None, limit: int = 50, only_revealed: bool = False) -> list[dict]:
    q = Gift.query
    if only_revealed:
        q = q.filter(Gift.is_revealed.is_(True))
    if chain_id:
        q = q.filter(Gift.chain_id == chain_id)

    out = []
    for gift in q.order_by(Gift.sent_at.desc()).limit(limit).all():
        data = gift_with_people(gift)
        data.pop("tx_hash", None)
        data.pop("token_address", None)
        data.pop("token_id", None)
        data.pop("revealed_at", None)
        data["chain"] = {"id": gift.chain.id, "name": gift.chain.name, "status": normalize_status(gift.chain.status)}
        if not gift.is_revealed:
            data["sender"] = dict(ANONYMOUS_SENDER)
            data["sender_fid"] = None
        out.append(data)
    return out
