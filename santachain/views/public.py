from __future__ import annotations

from flask import Blueprint, jsonify
from flask.views import MethodView

from ..models import ChainParticipant, Gift, GiftChain
from ..services.lifecycle import OPEN


public_bp = Blueprint("public", __name__)

METADATA = {
    "name": "Secret Santa Chain",
    "description": "Anonymous gifting network for the Farcaster community. "
                   "Join gift chains, send anonymous gifts, and spread holiday cheer!",
}


class LandingView(MethodView):
    def get(self):
        return jsonify({
            **METADATA,
            "open_chains": GiftChain.query.filter_by(status=OPEN).count(),
            "participants": ChainParticipant.query.count(),
            "gifts_sent": Gift.query.count(),
        })


public_bp.add_url_rule("/", view_func=LandingView.as_view("landing"))
