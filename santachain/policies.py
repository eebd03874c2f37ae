from __future__ import annotations

from flask import request
from flask.views import MethodView
from flask_login import current_user

from .errors import Forbidden, Unauthorized
from .models import GiftChain


def is_chain_creator(chain: GiftChain) -> bool:
    return current_user.is_authenticated and chain.creator_fid == current_user.fid


def require_chain_creator(chain: GiftChain) -> None:
    if not is_chain_creator(chain):
        raise Forbidden("Only the chain creator can perform this action")


class LoginRequiredMixin(MethodView):
    """Every method requires a Farcaster session."""

    def dispatch_request(self, *args, **kwargs):
        if not current_user.is_authenticated:
            raise Unauthorized("Sign in required")
        return super().dispatch_request(*args, **kwargs)


class WriteRequiresLoginMixin(MethodView):
    """
    Allows GET always.
    POST/PUT/PATCH/DELETE need a session.
    """
    def dispatch_request(self, *args, **kwargs):
        if request.method in {"POST", "PUT", "PATCH", "DELETE"} and not current_user.is_authenticated:
            raise Unauthorized("Sign in required")
        return super().dispatch_request(*args, **kwargs)
