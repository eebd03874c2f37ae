from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..errors import BadRequest, Conflict, Forbidden, NotFound
from ..extensions import db
from ..models import ChainParticipant, Gift, GiftChain, User, utcnow
from ..security import decrypt_recipient
from .lifecycle import (
    ACTIVE,
    COMPLETED,
    MATCHED,
    MATCHING,
    OPEN,
    REVEALING,
    is_revealed,
    normalize_status,
    stored_forms,
    transition,
)
from .matching import MatchingAlreadyComplete, MatchingAlreadyInProgress, MatchingResult
from .stores import SqlChainStore, SqlParticipantStore, build_matching_engine, sql_transaction

logger = logging.getLogger(__name__)


def get_chain_or_404(chain_id: str) -> GiftChain:
    chain = db.session.get(GiftChain, chain_id)
    if not chain:
        raise NotFound("Chain not found")
    return chain


def participant_count(chain_id: str) -> int:
    return ChainParticipant.query.filter_by(chain_id=chain_id).count()


def create_chain(
    creator: User,
    *,
    name: str,
    description: str | None,
    min_amount: float,
    max_amount: float,
    currency: str,
    min_participants: int,
    max_participants: int,
    join_deadline: datetime,
    reveal_date: datetime,
    now: datetime | None = None,
) -> GiftChain:
    now = now or utcnow()

    if min_amount > max_amount:
        raise BadRequest("Minimum amount cannot be greater than maximum amount")
    if min_participants > max_participants:
        raise BadRequest("Minimum participants cannot be greater than maximum participants")
    if join_deadline <= now:
        raise BadRequest("Join deadline must be in the future")
    if reveal_date <= join_deadline:
        raise BadRequest("Reveal date must be after join deadline")

    chain = GiftChain(
        name=name,
        description=description,
        creator_fid=creator.fid,
        min_amount=min_amount,
        max_amount=max_amount,
        currency=currency,
        min_participants=min_participants,
        max_participants=max_participants,
        join_deadline=join_deadline,
        reveal_date=reveal_date,
        status=OPEN,
    )
    db.session.add(chain)
    db.session.flush()

    # The creator is always the first participant.
    db.session.add(ChainParticipant(chain_id=chain.id, user_fid=creator.fid))
    db.session.commit()

    logger.info("Chain %s created by fid %s", chain.id, creator.fid)
    return chain


def join_chain(chain_id: str, user: User, now: datetime | None = None) -> ChainParticipant:
    now = now or utcnow()
    chain = get_chain_or_404(chain_id)

    if normalize_status(chain.status) != OPEN:
        raise BadRequest("Chain is no longer accepting participants")
    if chain.join_deadline <= now:
        raise BadRequest("Join deadline has passed")
    if participant_count(chain.id) >= chain.max_participants:
        raise BadRequest("Chain has reached maximum participants")
    if ChainParticipant.query.filter_by(chain_id=chain.id, user_fid=user.fid).first():
        raise Conflict("You have already joined this chain")

    participant = ChainParticipant(chain_id=chain.id, user_fid=user.fid)
    db.session.add(participant)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise Conflict("You have already joined this chain")

    logger.info("fid %s joined chain %s", user.fid, chain.id)
    return participant


def start_matching(chain_id: str, actor_fid: int) -> MatchingResult:
    """
    open -> matching, run the engine, and put the chain back to open if the
    engine fails. The engine itself performs matching -> active.
    """
    chain = get_chain_or_404(chain_id)
    if chain.creator_fid != actor_fid:
        raise Forbidden("Only the chain creator can perform this action")

    status = normalize_status(chain.status)
    if status in MATCHED:
        raise MatchingAlreadyComplete(chain.id, status)
    if status == MATCHING:
        raise MatchingAlreadyInProgress(chain.id)

    if participant_count(chain.id) < chain.min_participants:
        raise BadRequest(f"Need at least {chain.min_participants} participants to start matching")

    chains = SqlChainStore()
    if not chains.set_chain_status_if(chain.id, OPEN, transition(OPEN, MATCHING)):
        db.session.rollback()
        raise MatchingAlreadyInProgress(chain.id)
    db.session.commit()

    try:
        return build_matching_engine().run_matching(chain.id)
    except Exception as exc:
        # Store and commit errors leave the chain in matching just like engine
        # errors do, so every failure reverts.
        db.session.rollback()
        _revert_to_open(chains, chain.id, exc)
        raise


def _revert_to_open(chains: SqlChainStore, chain_id: str, cause: Exception) -> None:
    try:
        if chains.set_chain_status_if(chain_id, MATCHING, transition(MATCHING, OPEN)):
            logger.warning("Matching failed for chain %s, reverted to open: %s", chain_id, cause)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Could not revert chain %s to open after failed matching", chain_id)


def reveal_chain(chain_id: str, now: datetime | None = None) -> int:
    """Reveal every gift of the chain and complete it. Returns the gift count."""
    now = now or utcnow()
    chain = get_chain_or_404(chain_id)

    if now < chain.reveal_date:
        raise BadRequest("Reveal date has not passed yet", reveal_date=chain.reveal_date.isoformat())

    status = normalize_status(chain.status)
    if status not in (ACTIVE, REVEALING):
        raise BadRequest(f"Chain cannot be revealed in {status} status")

    chains = SqlChainStore()
    with sql_transaction():
        if status == ACTIVE and not chains.set_chain_status_if(chain.id, ACTIVE, transition(ACTIVE, REVEALING)):
            raise Conflict("Chain status changed during reveal")

        Gift.query.filter_by(chain_id=chain.id, is_revealed=False).update(
            {"is_revealed": True, "revealed_at": now}, synchronize_session=False
        )
        if not chains.set_chain_status_if(chain.id, REVEALING, transition(REVEALING, COMPLETED)):
            raise Conflict("Chain status changed during reveal")

    total = Gift.query.filter_by(chain_id=chain.id).count()
    logger.info("Chain %s revealed (%d gifts)", chain.id, total)
    return total


def reveal_status(chain: GiftChain, fid: int | None, now: datetime | None = None) -> dict:
    now = now or utcnow()
    status = normalize_status(chain.status)
    revealed = is_revealed(status)

    user_gifts = None
    if fid is not None and revealed:
        gifts = (
            Gift.query.filter(Gift.chain_id == chain.id)
            .filter((Gift.sender_fid == fid) | (Gift.recipient_fid == fid))
            .order_by(Gift.sent_at.desc())
            .all()
        )
        user_gifts = [gift_with_people(g) for g in gifts]

    return {
        "success": True,
        "chain_id": chain.id,
        "chain_name": chain.name,
        "status": status,
        "reveal_date": chain.reveal_date.isoformat(),
        "is_revealed": revealed,
        "can_reveal": now >= chain.reveal_date and status == ACTIVE,
        "user_gifts": user_gifts,
    }


def gift_with_people(gift: Gift) -> dict:
    data = gift.to_dict()
    data["sender"] = gift.sender.profile() if gift.sender else None
    data["recipient"] = gift.recipient.profile() if gift.recipient else None
    return data


def get_assigned_recipient(chain_id: str, fid: int) -> int | None:
    record = SqlParticipantStore().get_participant(chain_id, fid)
    return record.assigned_recipient_fid if record else None


def check_all_gifts_sent(chain_id: str) -> bool:
    rows = ChainParticipant.query.filter_by(chain_id=chain_id).all()
    return bool(rows) and all(p.has_sent_gift for p in rows)


def get_chain_stats(chain_id: str) -> dict:
    total = participant_count(chain_id)
    sent = ChainParticipant.query.filter_by(chain_id=chain_id, has_sent_gift=True).count()
    revealed = Gift.query.filter_by(chain_id=chain_id, is_revealed=True).count()
    return {
        "participantCount": total,
        "giftsSent": sent,
        "giftsRevealed": revealed,
        "completionPercentage": round(sent / total * 100) if total else 0,
    }


def list_chains(status: str, limit: int, offset: int) -> list[dict]:
    chains = (
        GiftChain.query.filter(GiftChain.status.in_(stored_forms(status)))
        .order_by(GiftChain.created_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    ids = [c.id for c in chains]
    counts: dict[str, int] = {}
    if ids:
        rows = (
            db.session.query(ChainParticipant.chain_id, func.count(ChainParticipant.id))
            .filter(ChainParticipant.chain_id.in_(ids))
            .group_by(ChainParticipant.chain_id)
            .all()
        )
        counts = {chain_id: n for chain_id, n in rows}

    return [
        {**c.to_dict(), "status": normalize_status(c.status), "current_participants": counts.get(c.id, 0)}
        for c in chains
    ]


def chain_detail(chain: GiftChain) -> dict:
    participants = (
        ChainParticipant.query.filter_by(chain_id=chain.id)
        .order_by(ChainParticipant.joined_at.asc(), ChainParticipant.id.asc())
        .all()
    )
    data = chain.to_dict()
    data["status"] = normalize_status(chain.status)
    data["creator"] = chain.creator.profile() if chain.creator else None
    return {
        "chain": data,
        # Assignments stay out of this payload; it is public.
        "participants": [
            {
                "user_fid": p.user_fid,
                "has_sent_gift": p.has_sent_gift,
                "joined_at": p.joined_at.isoformat(),
                "user": p.user.profile() if p.user else None,
            }
            for p in participants
        ],
        "stats": get_chain_stats(chain.id),
    }


def participations_for(fid: int) -> list[dict]:
    rows = (
        ChainParticipant.query.filter_by(user_fid=fid)
        .order_by(ChainParticipant.joined_at.desc())
        .all()
    )
    out = []
    for p in rows:
        recipient_fid = None
        if p.assigned_recipient_ciphertext:
            recipient_fid = decrypt_recipient(p.assigned_recipient_ciphertext)
        recipient = User.query.filter_by(fid=recipient_fid).first() if recipient_fid is not None else None
        chain = p.chain
        out.append({
            "id": p.id,
            "chain_id": p.chain_id,
            "user_fid": p.user_fid,
            "assigned_recipient_fid": recipient_fid,
            "assigned_recipient": recipient.profile() if recipient else None,
            "has_sent_gift": p.has_sent_gift,
            "joined_at": p.joined_at.isoformat(),
            "chain": {
                "id": chain.id,
                "name": chain.name,
                "status": normalize_status(chain.status),
                "join_deadline": chain.join_deadline.isoformat(),
                "reveal_date": chain.reveal_date.isoformat(),
                "min_amount": chain.min_amount,
                "max_amount": chain.max_amount,
                "currency": chain.currency,
            },
        })
    return out
