from __future__ import annotations

from typing import Any

from flask import jsonify

from .services.lifecycle import InvalidTransition
from .services.matching import (
    AssignmentFailed,
    ChainNotFound,
    InsufficientParticipants,
    MatchingAlreadyComplete,
    MatchingAlreadyInProgress,
    MatchingError,
    PersistenceFailure,
)


class ApiError(Exception):
    status_code = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, **self.details}


class BadRequest(ApiError):
    status_code = 400


class Unauthorized(ApiError):
    status_code = 401


class Forbidden(ApiError):
    status_code = 403


class NotFound(ApiError):
    status_code = 404


class Conflict(ApiError):
    status_code = 409


def matching_status_code(err: MatchingError) -> int:
    if isinstance(err, InsufficientParticipants):
        return 400
    if isinstance(err, ChainNotFound):
        return 404
    if isinstance(err, (MatchingAlreadyInProgress, MatchingAlreadyComplete)):
        return 409
    return 500


def register_error_handlers(app) -> None:
    @app.errorhandler(ApiError)
    def handle_api_error(err: ApiError):
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(InvalidTransition)
    def handle_invalid_transition(err: InvalidTransition):
        return jsonify({"error": str(err)}), 409

    @app.errorhandler(MatchingError)
    def handle_matching_error(err: MatchingError):
        body: dict[str, Any] = {"error": str(err)}
        if isinstance(err, PersistenceFailure):
            body.update(written=err.written, failed=err.failed, stage=err.stage, compensated=err.compensated)
        if isinstance(err, (AssignmentFailed, PersistenceFailure)):
            app.logger.error("Matching failed: %s", err)
        return jsonify(body), matching_status_code(err)

    @app.errorhandler(404)
    def handle_not_found(err):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(err):
        return jsonify({"error": "Method not allowed"}), 405
