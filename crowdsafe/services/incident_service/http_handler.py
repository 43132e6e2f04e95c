"""Incident Service HTTP handler - volunteer and admin endpoints.

Thin JSON layer over the observation lifecycle, the enrichment pipeline
and the expiration sweeper. Volunteers submit and acknowledge; admins
instruct, resolve and trigger enrichment. Emails are hashed before logging.
"""
import logging
import os
from typing import Any, Dict

from flask import Flask, jsonify, request

from crowdsafe.services.audit_service import AuditLogger
from crowdsafe.services.enrichment_service import create_enrichment_pipeline
from crowdsafe.services.sweeper_service import ExpirationSweeper
from crowdsafe.services.waypoint_service import WaypointGraph
from crowdsafe.shared.config import EngineConfig
from crowdsafe.shared.database import WAYPOINTS, NotFoundError, create_document_store
from crowdsafe.shared.models import CrowdLevel, Observation, ObservationImage
from crowdsafe.shared.utils import configure_pii_salt, hash_pii

from .lifecycle import (
    ALREADY_RESOLVED,
    InvalidTransitionError,
    ObservationLifecycle,
    TransitionResult,
)

logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)

# Configure PII salt from environment
pii_salt = os.getenv("PII_HASH_SALT", "default_dev_salt_change_in_production_32chars")
configure_pii_salt(pii_salt)

# Initialize components
engine_config = EngineConfig.from_env()
store = create_document_store(engine_config.store_backend)
audit_logger = AuditLogger(store)
lifecycle = ObservationLifecycle(
    store,
    audit_logger,
    ttl_minutes=engine_config.observation_ttl_minutes,
)
pipeline = create_enrichment_pipeline(store, audit_logger, engine_config)
sweeper = ExpirationSweeper(store, audit_logger)


def _observation_json(observation: Observation) -> Dict[str, Any]:
    return {
        "id": observation.observation_id,
        "waypoint_id": observation.waypoint_id,
        "volunteer_email": observation.volunteer_email,
        "crowd_level": observation.crowd_level.value,
        "status": observation.status.value,
        "message": observation.message,
        "has_image": observation.image is not None,
        "created_at": observation.created_at,
        "expires_at": observation.expires_at,
        "ai_status": observation.ai_status.value if observation.ai_status else None,
        "ai_insight": observation.ai_insight.to_document() if observation.ai_insight else None,
        "ai_error": observation.ai_error,
        "instruction": observation.instruction,
        "admin_email": observation.admin_email,
        "resolved_by": observation.resolved_by,
        "resolved_at": observation.resolved_at,
    }


def _transition_json(result: TransitionResult, conflict_reasons=()):
    """Render a transition result.

    A no-op is a benign race and comes back as 200 with applied=false,
    except for the reasons the caller must act on, which are 409.
    """
    body = {
        "observation_id": result.observation_id,
        "applied": result.applied,
        "status": result.status.value,
    }
    if result.applied:
        return jsonify(body), 200
    body["reason"] = result.reason
    if result.reason in conflict_reasons:
        return jsonify(body), 409
    return jsonify(body), 200


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint for ECS/ALB."""
    return jsonify({
        "status": "healthy",
        "service": "incident-service",
    }), 200


@app.route("/ready", methods=["GET"])
def ready():
    """Readiness check - verifies the lifecycle is wired to a store."""
    if lifecycle is None or store is None:
        return jsonify({"status": "not_ready", "reason": "store_not_initialized"}), 503
    return jsonify({
        "status": "ready",
        "store_backend": engine_config.store_backend,
        "reasoning_client": pipeline.llm is not None,
    }), 200


@app.route("/observations", methods=["POST"])
async def submit_observation():
    """Volunteer submits a field report.

    Request Body:
        {
            "waypoint_id": "wp_123",
            "volunteer_email": "vol@example.org",
            "crowd_level": "LOW" | "MEDIUM" | "HIGH" | "CRITICAL",
            "message": "Pushing near the barrier" (optional),
            "image": {"base64": "...", "width": 640, "height": 480} (optional)
        }

    Response:
        201 {"observation_id": "..."}
    """
    try:
        data = request.get_json(silent=True)
        if not data:
            logger.warning("SUBMIT_REQUEST_INVALID", extra={"reason": "empty_body"})
            return jsonify({"error": "Request body required"}), 400

        try:
            crowd_level = CrowdLevel(str(data.get("crowd_level", "")).upper())
        except ValueError:
            logger.warning("SUBMIT_REQUEST_INVALID", extra={"reason": "bad_crowd_level"})
            return jsonify({"error": "crowd_level must be LOW, MEDIUM, HIGH or CRITICAL"}), 400

        image = None
        if data.get("image"):
            image = ObservationImage(
                base64=data["image"].get("base64", ""),
                width=data["image"].get("width"),
                height=data["image"].get("height"),
            )

        observation_id = await lifecycle.submit(
            waypoint_id=data.get("waypoint_id"),
            volunteer_email=data.get("volunteer_email"),
            crowd_level=crowd_level,
            message=data.get("message"),
            image=image,
        )
        return jsonify({"observation_id": observation_id}), 201

    except InvalidTransitionError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        logger.error(
            "SUBMIT_ERROR",
            extra={"error": str(e), "error_type": type(e).__name__}
        )
        return jsonify({"error": "Submission failed"}), 500


@app.route("/observations/<observation_id>", methods=["GET"])
async def get_observation(observation_id: str):
    try:
        observation = await lifecycle.get(observation_id)
        return jsonify(_observation_json(observation)), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception as e:
        logger.error(
            "GET_OBSERVATION_ERROR",
            extra={"observation_id": observation_id, "error": str(e)}
        )
        return jsonify({"error": "Read failed"}), 500


@app.route("/observations/<observation_id>/instruction", methods=["POST"])
async def send_instruction(observation_id: str):
    """Admin sends an instruction to the reporting volunteer.

    Request Body:
        {"instruction": "Redirect flow via Gate B", "admin_email": "..."}

    Response:
        200 on transition or a benign no-op, 409 if already resolved
    """
    data = request.get_json(silent=True) or {}
    admin_email = data.get("admin_email")
    try:
        logger.info(
            "INSTRUCTION_REQUESTED",
            extra={"observation_id": observation_id, "admin_hash": hash_pii(admin_email)}
        )
        result = await lifecycle.send_instruction(
            observation_id, data.get("instruction", ""), admin_email
        )
        return _transition_json(result, conflict_reasons=(ALREADY_RESOLVED,))
    except InvalidTransitionError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception as e:
        logger.error(
            "INSTRUCTION_ERROR",
            extra={"observation_id": observation_id, "error": str(e)}
        )
        return jsonify({"error": "Instruction failed"}), 500


@app.route("/observations/<observation_id>/acknowledge", methods=["POST"])
async def acknowledge(observation_id: str):
    data = request.get_json(silent=True) or {}
    try:
        result = await lifecycle.acknowledge(observation_id, data.get("volunteer_email"))
        return _transition_json(result)
    except InvalidTransitionError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception as e:
        logger.error(
            "ACKNOWLEDGE_ERROR",
            extra={"observation_id": observation_id, "error": str(e)}
        )
        return jsonify({"error": "Acknowledge failed"}), 500


@app.route("/observations/<observation_id>/resolve", methods=["POST"])
async def resolve(observation_id: str):
    data = request.get_json(silent=True) or {}
    try:
        result = await lifecycle.resolve(observation_id, data.get("resolved_by"))
        return _transition_json(result)
    except InvalidTransitionError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception as e:
        logger.error(
            "RESOLVE_ERROR",
            extra={"observation_id": observation_id, "error": str(e)}
        )
        return jsonify({"error": "Resolve failed"}), 500


@app.route("/observations/<observation_id>/enrich", methods=["POST"])
async def enrich(observation_id: str):
    """Client-initiated enrichment trigger. Idempotent.

    Response:
        {"status": "DONE" | "FAILED" | "SKIPPED", "error_code": ..., "insight": ...}
    """
    try:
        outcome = await pipeline.process(observation_id)
        return jsonify({
            "observation_id": observation_id,
            "status": outcome.status.value,
            "error_code": outcome.error_code.value if outcome.error_code else None,
            "insight": outcome.insight.to_document() if outcome.insight else None,
        }), 200
    except Exception as e:
        logger.error(
            "ENRICH_ERROR",
            extra={"observation_id": observation_id, "error": str(e)}
        )
        return jsonify({"error": "Enrichment trigger failed"}), 500


@app.route("/observations/<observation_id>/audit", methods=["GET"])
async def audit_trail(observation_id: str):
    try:
        entries = await audit_logger.entries_for(observation_id)
        return jsonify({
            "observation_id": observation_id,
            "entries": [
                {
                    "id": e.entry_id,
                    "action": e.action.value,
                    "actor_email": e.actor_email,
                    "message": e.message,
                    "created_at": e.created_at,
                }
                for e in entries
            ],
        }), 200
    except Exception as e:
        logger.error(
            "AUDIT_TRAIL_ERROR",
            extra={"observation_id": observation_id, "error": str(e)}
        )
        return jsonify({"error": "Audit read failed"}), 500


@app.route("/waypoints/<waypoint_id>/paths", methods=["GET"])
async def waypoint_paths(waypoint_id: str):
    """Evacuation corridors reachable from a waypoint.

    Query Params:
        depth: Hop bound (default from engine config), clamped to the
            configured depth limit
    """
    try:
        depth = int(request.args.get("depth", engine_config.path_max_depth))
    except ValueError:
        return jsonify({"error": "depth must be an integer"}), 400

    if depth > engine_config.path_depth_limit:
        logger.warning(
            "WAYPOINT_PATHS_DEPTH_CLAMPED",
            extra={"requested": depth, "limit": engine_config.path_depth_limit}
        )
        depth = engine_config.path_depth_limit

    try:
        graph = WaypointGraph.from_snapshots(await store.query(WAYPOINTS))
        if waypoint_id not in graph:
            return jsonify({"error": f"Waypoint {waypoint_id} not found"}), 404

        paths = graph.find_paths(waypoint_id, depth)
        return jsonify({
            "waypoint_id": waypoint_id,
            "depth": depth,
            "paths": paths,
            "corridors": [graph.describe_path(p) for p in paths],
        }), 200
    except Exception as e:
        logger.error(
            "WAYPOINT_PATHS_ERROR",
            extra={"waypoint_id": waypoint_id, "error": str(e)}
        )
        return jsonify({"error": "Path lookup failed"}), 500


@app.route("/sweep", methods=["POST"])
async def sweep():
    """Run one expiration pass on demand."""
    try:
        resolved = await sweeper.sweep()
        return jsonify({"resolved": resolved}), 200
    except Exception as e:
        logger.error(
            "SWEEP_REQUEST_ERROR",
            extra={"error": str(e), "error_type": type(e).__name__}
        )
        return jsonify({"error": "Sweep failed"}), 500


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    port = int(os.getenv("PORT", "8010"))
    app.run(host="0.0.0.0", port=port, debug=False)
