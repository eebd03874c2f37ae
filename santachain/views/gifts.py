from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask.views import MethodView
from flask_login import current_user

from ..errors import BadRequest
from ..models import GIFT_TYPES
from ..policies import LoginRequiredMixin
from ..services.gifts import gift_log, list_user_gifts, send_gift
from ..services.users import require_valid_score
from .params import json_body, parse_choice, parse_fid, parse_int, parse_positive_number, parse_text


gifts_bp = Blueprint("gifts", __name__, url_prefix="/api/gifts")


class GiftsView(LoginRequiredMixin):
    def get(self):
        kind = parse_choice(request.args.get("type"), "type", ("all", "sent", "received"), default="all")
        gifts = list_user_gifts(current_user.fid, kind, request.args.get("chainId") or None)
        return jsonify({"gifts": gifts})

    def post(self):
        body = json_body()
        require_valid_score(current_user.fid)

        chain_id = body.get("chainId")
        if not isinstance(chain_id, str) or not chain_id:
            raise BadRequest("chainId is required")

        amount = body.get("amount")
        gift = send_gift(
            current_user.fid,
            chain_id,
            parse_fid(body.get("recipientFid"), "recipientFid"),
            parse_choice(body.get("giftType"), "giftType", GIFT_TYPES),
            amount=parse_positive_number(amount, "amount") if amount is not None else None,
            currency=parse_text(body.get("currency"), "currency", max_len=8, required=False),
            token_address=parse_text(body.get("tokenAddress"), "tokenAddress", max_len=64, required=False),
            token_id=parse_text(body.get("tokenId"), "tokenId", max_len=128, required=False),
            message=parse_text(body.get("message"), "message", max_len=500, required=False),
            tx_hash=parse_text(body.get("txHash"), "txHash", max_len=128, required=False),
        )
        return jsonify({"success": True, "gift": gift.to_dict()}), 201


class GiftLogView(MethodView):
    def get(self):
        gifts = gift_log(
            chain_id=request.args.get("chainId") or None,
            limit=parse_int(request.args.get("limit"), "limit", 50, minimum=1, maximum=200),
            only_revealed=request.args.get("onlyRevealed") == "true",
        )
        return jsonify({"gifts": gifts, "count": len(gifts)})


gifts_bp.add_url_rule("", view_func=GiftsView.as_view("gifts"), methods=["GET", "POST"])
gifts_bp.add_url_rule("/log", view_func=GiftLogView.as_view("log"))
