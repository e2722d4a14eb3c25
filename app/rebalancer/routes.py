"""Module for handling API routes"""

import threading

from flask import Blueprint, jsonify, make_response, request

from .bridge import SIGNATURE_HEADER, verify_progress_signature
from .engine import RebalanceEngine, build_engine
from .logging_config import setup_logger
from .models import BridgeProgress

logger = setup_logger()

rebalancer_blueprint = Blueprint("rebalancer", __name__)


def start_engine(config_path=None, engine=None):
    """Build the engine (unless one is given) and run it until stopped"""
    if engine is None:
        engine = build_engine(config_path)

    # Store on module level for route access before app context is available
    start_engine._engine = engine

    engine.start()

    return engine


def set_engine(engine):
    start_engine._engine = engine


def _get_engine() -> RebalanceEngine:
    """Get the engine instance."""
    return getattr(start_engine, "_engine", None)


@rebalancer_blueprint.route("/opportunities", methods=["GET"])
def get_opportunities():
    engine = _get_engine()
    if not engine:
        return jsonify({"error": "Engine not initialized"}), 500

    try:
        min_gain_bps = int(request.args.get("minGainBps", engine.scheduler.min_gain_bps))
    except ValueError:
        return jsonify({"error": "minGainBps must be an integer"}), 400

    logger.info("API: Getting opportunities with min gain %s bps", min_gain_bps)
    opportunities = engine.scheduler.get_opportunities(min_gain_bps)
    return make_response(jsonify([opportunity.to_dict() for opportunity in opportunities]))


@rebalancer_blueprint.route("/history/<user>", methods=["GET"])
def get_outcome_history(user):
    engine = _get_engine()
    if not engine:
        return jsonify({"error": "Engine not initialized"}), 500

    logger.info("API: Getting outcome history for %s", user)
    outcomes = engine.scheduler.get_outcome_history(user)
    return make_response(jsonify([outcome.to_dict() for outcome in outcomes]))


@rebalancer_blueprint.route("/cycle", methods=["POST"])
def trigger_cycle():
    engine = _get_engine()
    if not engine:
        return jsonify({"error": "Engine not initialized"}), 500

    if engine.scheduler.cycle_running:
        return jsonify({"error": "A rebalance cycle is already running"}), 409

    body = request.get_json(silent=True) or {}
    users = body.get("users")
    if users is not None and not isinstance(users, list):
        return jsonify({"error": "users must be a list of addresses"}), 400

    def _run():
        try:
            engine.scheduler.run_cycle(users)
        except Exception as ex:
            logger.error("API: Triggered cycle failed: %s", ex, exc_info=True)

    threading.Thread(target=_run, name="rebalance-cycle-api", daemon=True).start()
    logger.info("API: Rebalance cycle triggered for %s", users if users is not None else "configured users")
    return jsonify({"status": "accepted"}), 202


@rebalancer_blueprint.route("/bridge/progress", methods=["POST"])
def bridge_progress():
    engine = _get_engine()
    if not engine:
        return jsonify({"error": "Engine not initialized"}), 500

    if not verify_progress_signature(
        engine.config.BRIDGE_RELAY_API_KEY, request.get_data(), request.headers.get(SIGNATURE_HEADER)
    ):
        logger.warning("API: Rejected bridge progress with a missing or invalid signature from %s", request.remote_addr)
        return jsonify({"error": "invalid signature"}), 401

    body = request.get_json(silent=True) or {}
    intent_id = body.get("intentId")
    kind = body.get("kind")
    if not intent_id or not kind:
        return jsonify({"error": "intentId and kind are required"}), 400

    progress = BridgeProgress(str(intent_id), str(kind), body.get("detail"), body.get("clientReference"))
    outcome = engine.tracker.on_progress(progress)
    return jsonify({"status": outcome.status.value if outcome else "acknowledged"})
