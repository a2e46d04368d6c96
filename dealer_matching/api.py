"""
HTTP API for Dealer Matching.

A small Flask app that:
1. Validates interactions at the boundary and records them
2. Scores listings and lists a dealer's matches
3. Gates match views behind the daily plan quota
4. Serves score explanations, learning progress, dashboard metrics and usage

Authentication is handled upstream; the dealer id arrives in the path.
"""

import logging
from typing import Optional
from flask import Flask, jsonify, request

from .errors import MatchNotFoundError, OwnershipError, ValidationError
from .models import DealerPreferences, VehicleListing
from .pipeline import MatchingService
from .quota import RateLimiter

logger = logging.getLogger(__name__)


def _int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer") from None


def create_app(
    service: Optional[MatchingService] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> Flask:
    """
    Build the Flask app around a matching service.

    Args:
        service: Injected service (tests pass one backed by InMemoryDatabase)
        rate_limiter: Demo-request limiter; defaults to one on the service's store
    """
    app = Flask(__name__)
    app.config["MATCHING_SERVICE"] = service
    app.config["DEMO_RATE_LIMITER"] = rate_limiter

    def get_service() -> MatchingService:
        if app.config["MATCHING_SERVICE"] is None:
            app.config["MATCHING_SERVICE"] = MatchingService()
        return app.config["MATCHING_SERVICE"]

    def get_rate_limiter() -> RateLimiter:
        if app.config["DEMO_RATE_LIMITER"] is None:
            app.config["DEMO_RATE_LIMITER"] = RateLimiter(db=get_service().db)
        return app.config["DEMO_RATE_LIMITER"]

    @app.errorhandler(ValidationError)
    def handle_validation_error(error):
        return jsonify({"error": str(error)}), 400

    @app.errorhandler(OwnershipError)
    def handle_ownership_error(error):
        logger.warning(f"Ownership check failed: {error}")
        return jsonify({"error": "Forbidden"}), 403

    @app.errorhandler(MatchNotFoundError)
    def handle_not_found(error):
        return jsonify({"error": str(error)}), 404

    @app.route("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "ok"}

    @app.route("/dealers/<dealer_id>/interactions", methods=["POST"])
    def create_interaction(dealer_id: str):
        body = request.get_json(silent=True) or {}
        interaction_type = body.get("interactionType")
        if not interaction_type:
            raise ValidationError("Missing interactionType")

        interaction = get_service().record_interaction(
            dealer_id,
            interaction_type,
            vehicle_match_id=body.get("vehicleMatchId"),
            duration_seconds=body.get("durationSeconds"),
            metadata=body.get("metadata"),
        )
        return jsonify({
            "success": True,
            "interaction": interaction.to_dict(),
            "message": "Interaction recorded successfully",
        }), 201

    @app.route("/dealers/<dealer_id>/interactions", methods=["GET"])
    def list_interactions(dealer_id: str):
        service = get_service()
        interactions = service.get_interactions(
            dealer_id,
            interaction_type=request.args.get("type"),
            limit=_int_arg("limit", 50),
            offset=_int_arg("offset", 0),
        )
        return jsonify({
            "success": True,
            "interactions": [i.to_dict() for i in interactions],
            "stats": service.interaction_stats(dealer_id),
        })

    @app.route("/dealers/<dealer_id>/matches", methods=["POST"])
    def create_match(dealer_id: str):
        body = request.get_json(silent=True) or {}
        try:
            listing = VehicleListing.from_dict(body)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid listing: {e}") from None

        match = get_service().score_listing(dealer_id, listing)
        return jsonify({"success": True, "match": match.to_dict()}), 201

    @app.route("/dealers/<dealer_id>/matches", methods=["GET"])
    def list_matches(dealer_id: str):
        service = get_service()
        min_score = _int_arg("minScore", 0)
        matches = service.get_matches(
            dealer_id,
            min_score=min_score,
            saved_only=request.args.get("savedOnly") == "true",
            limit=_int_arg("limit", 20),
            offset=_int_arg("offset", 0),
            sort_by=request.args.get("sortBy") or "final_score",
        )
        progress = service.learning_progress(dealer_id)
        return jsonify({
            "success": True,
            "matches": [m.to_dict() for m in matches],
            "total": service.count_matches(dealer_id, min_score=min_score),
            "hasPreferences": progress.total_interactions > 0,
        })

    @app.route("/dealers/<dealer_id>/metrics")
    def dealer_metrics(dealer_id: str):
        return jsonify({"success": True, "metrics": get_service().dealer_metrics(dealer_id).to_dict()})

    @app.route("/dealers/<dealer_id>/matches/<match_id>/view", methods=["POST"])
    def view_match(dealer_id: str, match_id: str):
        plan = request.args.get("plan") or (request.get_json(silent=True) or {}).get("plan")
        if not plan:
            raise ValidationError("Missing plan")

        decision, match = get_service().view_match(dealer_id, match_id, plan)
        if not decision.allowed:
            return jsonify({"success": False, "usage": decision.to_dict(), "error": decision.message}), 429

        return jsonify({"success": True, "usage": decision.to_dict(), "match": match.to_dict()})

    @app.route("/dealers/<dealer_id>/matches/<match_id>/explanation")
    def explain_match(dealer_id: str, match_id: str):
        lines = get_service().explain_match(dealer_id, match_id)
        return jsonify({"success": True, "explanation": lines})

    @app.route("/dealers/<dealer_id>/learning-progress")
    def learning_progress(dealer_id: str):
        return jsonify({"success": True, "progress": get_service().learning_progress(dealer_id).to_dict()})

    @app.route("/demo/matches", methods=["POST"])
    def demo_matches():
        """Score sample listings for a prospect without persisting anything."""
        body = request.get_json(silent=True) or {}
        email = body.get("email") or ""
        if "@" not in email:
            raise ValidationError("A valid email is required")

        decision = get_rate_limiter().hit(email)
        if not decision.allowed:
            return jsonify({"error": "Rate limit exceeded. Please try again in an hour."}), 429

        try:
            preferences = DealerPreferences.from_dict(body.get("preferences") or {})
            listings = [VehicleListing.from_dict(row) for row in body.get("listings") or []]
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid demo request: {e}") from None

        results = get_service().scorer.score_listings(listings, preferences)
        return jsonify({
            "success": True,
            "matches": [
                {"listing": listing.to_dict(), "base_score": base_score, "score_breakdown": breakdown.to_dict()}
                for listing, base_score, breakdown in results
            ],
        })

    @app.route("/dealers/<dealer_id>/usage")
    def usage(dealer_id: str):
        plan = request.args.get("plan")
        if not plan:
            raise ValidationError("Missing plan")
        service = get_service()
        return jsonify({
            "success": True,
            "usage": service.usage_stats(dealer_id, plan).to_dict(),
            "resetsIn": service.quota.time_until_reset(),
        })

    return app


def run_server(host: str = "0.0.0.0", port: int = 5000, debug: bool = False):
    """Run the Flask server."""
    create_app().run(host=host, port=port, debug=debug)


def main():
    """CLI entry point for the API server."""
    import argparse

    parser = argparse.ArgumentParser(description="Dealer Matching API Server")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=5000, help="Port to bind to")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )

    logger.info(f"Starting dealer matching API on {args.host}:{args.port}")
    run_server(args.host, args.port, args.debug)


if __name__ == "__main__":
    main()
