from __future__ import annotations

from flask import Blueprint, current_app, jsonify
from flask.views import MethodView
from flask_login import current_user, login_user, logout_user

from ..extensions import db
from ..services.users import public_profile, require_valid_score, upsert_user
from .params import json_body, parse_fid


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


class SessionView(MethodView):
    """
    Sign in with a Farcaster fid. The fid must pass the Neynar score check;
    the profile is refreshed locally on every sign-in.
    """
    def get(self):
        if not current_user.is_authenticated:
            return jsonify({"authenticated": False}), 401
        return jsonify({"authenticated": True, "user": {**current_user.profile(), "neynar_score": current_user.neynar_score}})

    def post(self):
        fid = parse_fid(json_body().get("fid"))

        validation = require_valid_score(fid)
        user = upsert_user(fid, validation.user, validation.score)
        db.session.commit()

        login_user(user)
        current_app.logger.info("fid %s signed in", fid)
        return jsonify({
            "authenticated": True,
            "score": validation.score,
            "user": public_profile(validation.user, fid),
        })

    def delete(self):
        if current_user.is_authenticated:
            logout_user()
        return jsonify({"authenticated": False})


auth_bp.add_url_rule("/session", view_func=SessionView.as_view("session"), methods=["GET", "POST", "DELETE"])
