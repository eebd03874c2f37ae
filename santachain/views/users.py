from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from flask.views import MethodView
from flask_login import current_user
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db, score_client
from ..policies import LoginRequiredMixin
from ..services.chains import participations_for
from ..services.users import public_profile, upsert_user
from .params import json_body, parse_fid


users_bp = Blueprint("users", __name__, url_prefix="/api/user")


class ValidateView(MethodView):
    def get(self):
        fid = parse_fid(request.args.get("fid"))
        validation = score_client.validate_user_score(fid)
        return jsonify({**validation.to_dict(), "minScore": score_client.min_user_score})

    def post(self):
        fid = parse_fid(json_body().get("fid"))
        validation = score_client.validate_user_score(fid)

        if not validation.is_valid:
            current_app.logger.info("Validation failed for fid %s: %s", fid, validation.error)
            return jsonify({**validation.to_dict(), "minScore": score_client.min_user_score}), 403

        if validation.user:
            try:
                upsert_user(fid, validation.user, validation.score)
                db.session.commit()
            except SQLAlchemyError as exc:
                # Profile caching is best effort; the validation result stands.
                db.session.rollback()
                current_app.logger.error("Error upserting user %s: %s", fid, exc)

        return jsonify({
            **validation.to_dict(),
            "minScore": score_client.min_user_score,
            "user": public_profile(validation.user, fid),
        })


class ParticipationsView(LoginRequiredMixin):
    def get(self):
        return jsonify({"success": True, "participations": participations_for(current_user.fid)})


users_bp.add_url_rule("/validate", view_func=ValidateView.as_view("validate"), methods=["GET", "POST"])
users_bp.add_url_rule("/participations", view_func=ParticipationsView.as_view("participations"))
