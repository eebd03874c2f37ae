from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user

from ..errors import BadRequest
from ..extensions import db
from ..models import CURRENCIES
from ..policies import WriteRequiresLoginMixin, require_chain_creator
from ..services import chains as chain_service
from ..services.users import require_valid_score, upsert_user
from .params import (
    json_body,
    parse_choice,
    parse_datetime,
    parse_fid,
    parse_int,
    parse_positive_number,
    parse_text,
)


chains_bp = Blueprint("chains", __name__, url_prefix="/api/chains")


def _refresh_current_user():
    validation = require_valid_score(current_user.fid)
    user = upsert_user(current_user.fid, validation.user, validation.score)
    db.session.commit()
    return user


class ChainListView(WriteRequiresLoginMixin):
    def get(self):
        status = request.args.get("status") or "open"
        limit = parse_int(request.args.get("limit"), "limit", 20, minimum=1, maximum=100)
        offset = parse_int(request.args.get("offset"), "offset", 0, minimum=0)
        try:
            chains = chain_service.list_chains(status, limit, offset)
        except ValueError as e:
            raise BadRequest(str(e))
        return jsonify({"success": True, "chains": chains, "total": len(chains)})

    def post(self):
        body = json_body()
        fields = dict(
            name=parse_text(body.get("name"), "name", min_len=3, max_len=100),
            description=parse_text(body.get("description"), "description", max_len=500, required=False),
            min_amount=parse_positive_number(body.get("minAmount"), "minAmount"),
            max_amount=parse_positive_number(body.get("maxAmount"), "maxAmount"),
            currency=parse_choice(body.get("currency"), "currency", CURRENCIES, default="ETH"),
            min_participants=parse_int(body.get("minParticipants"), "minParticipants", 3, minimum=2, maximum=100),
            max_participants=parse_int(body.get("maxParticipants"), "maxParticipants", 50, minimum=2, maximum=100),
            join_deadline=parse_datetime(body.get("joinDeadline"), "joinDeadline"),
            reveal_date=parse_datetime(body.get("revealDate"), "revealDate"),
        )

        creator = _refresh_current_user()
        chain = chain_service.create_chain(creator, **fields)
        return jsonify({"success": True, "chain": chain.to_dict()}), 201


class ChainDetailView(WriteRequiresLoginMixin):
    def get(self, chain_id: str):
        chain = chain_service.get_chain_or_404(chain_id)
        return jsonify(chain_service.chain_detail(chain))

    def post(self, chain_id: str):
        """Join."""
        chain_service.get_chain_or_404(chain_id)
        user = _refresh_current_user()
        chain_service.join_chain(chain_id, user)
        return jsonify({"success": True, "message": "Successfully joined the chain"})

    def patch(self, chain_id: str):
        action = json_body().get("action")
        chain = chain_service.get_chain_or_404(chain_id)
        require_chain_creator(chain)

        if action == "start_matching":
            result = chain_service.start_matching(chain.id, current_user.fid)
            current_app.logger.info("Chain %s matched by creator fid %s", chain.id, current_user.fid)
            # Assignments stay server-side; participants read their own.
            return jsonify({
                "success": True,
                "message": "Matching completed successfully",
                "participants": len(result.assignments),
            })

        if action == "reveal":
            revealed = chain_service.reveal_chain(chain.id)
            return jsonify({"success": True, "message": "Chain revealed successfully", "revealed_gifts": revealed})

        raise BadRequest("Invalid action")


class ChainRevealView(WriteRequiresLoginMixin):
    def get(self, chain_id: str):
        chain = chain_service.get_chain_or_404(chain_id)
        raw_fid = request.args.get("fid")
        if raw_fid:
            fid = parse_fid(raw_fid)
        else:
            fid = current_user.fid if current_user.is_authenticated else None
        return jsonify(chain_service.reveal_status(chain, fid))

    def post(self, chain_id: str):
        revealed = chain_service.reveal_chain(chain_id)
        return jsonify({"success": True, "message": "Chain revealed successfully", "revealed_gifts": revealed})


chains_bp.add_url_rule("", view_func=ChainListView.as_view("list"), methods=["GET", "POST"])
chains_bp.add_url_rule("/<chain_id>", view_func=ChainDetailView.as_view("detail"), methods=["GET", "POST", "PATCH"])
chains_bp.add_url_rule("/<chain_id>/reveal", view_func=ChainRevealView.as_view("reveal"), methods=["GET", "POST"])
