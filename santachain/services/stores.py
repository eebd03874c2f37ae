from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from flask import current_app
from sqlalchemy import select

from ..extensions import db
from ..models import ChainParticipant, GiftChain
from ..security import decrypt_recipient, encrypt_recipient
from .lifecycle import normalize_status, stored_forms
from .matching import ChainLocks, ChainRecord, MatchingEngine, ParticipantRecord


@contextmanager
def sql_transaction() -> Iterator[None]:
    """Commit everything done inside the block, or roll all of it back."""
    try:
        yield
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


class SqlParticipantStore:
    def list_participants(self, chain_id: str) -> list[int]:
        rows = db.session.execute(
            select(ChainParticipant.user_fid)
            .where(ChainParticipant.chain_id == chain_id)
            .order_by(ChainParticipant.joined_at.asc(), ChainParticipant.id.asc())
        ).scalars()
        return [int(fid) for fid in rows]

    def get_participant(self, chain_id: str, fid: int) -> ParticipantRecord | None:
        p = ChainParticipant.query.filter_by(chain_id=chain_id, user_fid=fid).first()
        if not p:
            return None
        recipient = decrypt_recipient(p.assigned_recipient_ciphertext) if p.assigned_recipient_ciphertext else None
        return ParticipantRecord(fid=int(p.user_fid), assigned_recipient_fid=recipient, has_sent_gift=p.has_sent_gift)

    def set_assigned_recipient(self, chain_id: str, fid: int, recipient_fid: int | None) -> bool:
        token = encrypt_recipient(recipient_fid) if recipient_fid is not None else None
        updated = ChainParticipant.query.filter_by(chain_id=chain_id, user_fid=fid).update(
            {"assigned_recipient_ciphertext": token}, synchronize_session=False
        )
        return updated == 1


class SqlChainStore:
    def get_chain(self, chain_id: str) -> ChainRecord | None:
        chain = db.session.execute(
            select(GiftChain).where(GiftChain.id == chain_id).execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if not chain:
            return None
        return ChainRecord(
            id=chain.id,
            status=normalize_status(chain.status),
            min_participants=chain.min_participants,
            max_participants=chain.max_participants,
            join_deadline=chain.join_deadline,
            reveal_date=chain.reveal_date,
        )

    def set_chain_status(self, chain_id: str, status: str) -> None:
        GiftChain.query.filter_by(id=chain_id).update(
            {"status": normalize_status(status)}, synchronize_session=False
        )

    def set_chain_status_if(self, chain_id: str, expected: str, status: str) -> bool:
        # Single conditional UPDATE; only one concurrent caller can win it.
        updated = GiftChain.query.filter(
            GiftChain.id == chain_id,
            GiftChain.status.in_(stored_forms(expected)),
        ).update({"status": normalize_status(status)}, synchronize_session=False)
        return updated == 1


def build_matching_engine(**kwargs) -> MatchingEngine:
    """Engine wired to the SQL stores and the app-wide lock registry."""
    app = current_app._get_current_object()
    locks = app.extensions.setdefault("matching_locks", ChainLocks())
    kwargs.setdefault("max_attempts", int(app.config.get("MATCHING_MAX_ATTEMPTS", 10)))
    return MatchingEngine(
        SqlParticipantStore(),
        SqlChainStore(),
        transaction=sql_transaction,
        locks=locks,
        **kwargs,
    )
