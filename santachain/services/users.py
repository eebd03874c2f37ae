from __future__ import annotations

from typing import Any

from ..errors import Forbidden
from ..extensions import db, score_client
from ..models import User
from ..neynar import ScoreValidation


def upsert_user(fid: int, profile: dict[str, Any] | None, score: float | None = None) -> User:
    """
    Create or refresh the local copy of a Farcaster profile.
    Caller commits.
    """
    user = User.query.filter_by(fid=fid).first()
    if not user:
        user = User(fid=fid)
        db.session.add(user)

    if profile:
        user.username = profile.get("username") or None
        user.display_name = profile.get("display_name") or None
        user.pfp_url = profile.get("pfp_url") or None
        user.custody_address = profile.get("custody_address") or None
        if score is None:
            score = (profile.get("experimental") or {}).get("neynar_user_score")
    if score is not None:
        user.neynar_score = float(score)
    return user


def require_valid_score(fid: int) -> ScoreValidation:
    validation = score_client.validate_user_score(fid)
    if not validation.is_valid:
        raise Forbidden(validation.error or "User validation failed", score=validation.score)
    return validation


def public_profile(profile: dict[str, Any] | None, fid: int) -> dict[str, Any]:
    profile = profile or {}
    verified = profile.get("verified_addresses") or {}
    return {
        "fid": profile.get("fid", fid),
        "username": profile.get("username"),
        "displayName": profile.get("display_name"),
        "pfpUrl": profile.get("pfp_url"),
        "custodyAddress": profile.get("custody_address"),
        "followerCount": profile.get("follower_count"),
        "followingCount": profile.get("following_count"),
        "verifiedAddresses": {
            "ethAddresses": verified.get("eth_addresses") or [],
            "solAddresses": verified.get("sol_addresses") or [],
        },
    }
