from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import requests

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.neynar.com"
DEFAULT_MIN_USER_SCORE = 0.7


@dataclass
class ScoreValidation:
    is_valid: bool
    score: float
    user: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.is_valid, "score": self.score, "error": self.error}


@dataclass
class NeynarClient:
    """
    Thin client for the Neynar user API. Only the quality score and the public
    profile fields are used; everything else in the payload is ignored.
    """
    api_key: str = ""
    base_url: str = DEFAULT_BASE_URL
    min_user_score: float = DEFAULT_MIN_USER_SCORE
    timeout: float = 10.0
    session: requests.Session = field(default_factory=requests.Session)

    def init_app(self, app) -> None:
        self.api_key = (app.config.get("NEYNAR_API_KEY") or "").strip()
        self.base_url = (app.config.get("NEYNAR_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
        self.min_user_score = float(app.config.get("NEYNAR_MIN_USER_SCORE", DEFAULT_MIN_USER_SCORE))
        self.timeout = float(app.config.get("NEYNAR_TIMEOUT_SECONDS", 10))
        app.extensions["neynar"] = self

    def fetch_user(self, fid: int) -> dict[str, Any] | None:
        if not self.api_key:
            logger.error("NEYNAR_API_KEY is not configured")
            return None

        url = f"{self.base_url}/v2/farcaster/user/bulk"
        try:
            resp = self.session.get(
                url,
                params={"fids": str(fid)},
                headers={"x-api-key": self.api_key, "Content-Type": "application/json"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except requests.HTTPError as exc:
            logger.warning("Neynar API error for fid %s: %s", fid, exc)
            return None
        except (requests.RequestException, ValueError) as exc:
            logger.error("Neynar request failed for fid %s: %s", fid, exc)
            return None

        users = data.get("users") or []
        if not users:
            logger.info("No Neynar user found for fid %s", fid)
            return None
        return users[0]

    def validate_user_score(self, fid: int) -> ScoreValidation:
        user = self.fetch_user(fid)
        if not user:
            if not self.api_key:
                return ScoreValidation(
                    False, 0.0, None,
                    "Neynar API key not configured. Please contact the app administrator.",
                )
            return ScoreValidation(
                False, 0.0, None,
                f"User with FID {fid} not found in Neynar. This may be a new account "
                "or the API may be temporarily unavailable.",
            )

        score = float((user.get("experimental") or {}).get("neynar_user_score") or 0.0)
        if score < self.min_user_score:
            return ScoreValidation(
                False, score, user,
                f"Your Neynar score ({score:.2f}) is below the minimum threshold of "
                f"{self.min_user_score}. Please improve your Farcaster activity to participate.",
            )

        logger.debug("fid %s validated with score %.2f", fid, score)
        return ScoreValidation(True, score, user)
