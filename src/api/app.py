"""Flask API for the experimentation engine - operator tooling and product surfaces."""
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).parent.parent.parent
sys.path.insert(0, str(ROOT))

from flask import Flask, request, jsonify

from src.growth_experiments.engine import ExperimentEngine

logger = logging.getLogger(__name__)

STATUS_CODES = {
    "validation_error": 400,
    "not_found": 404,
    "category_conflict": 409,
    "invalid_transition": 409,
    "already_decided": 409,
    "data_source_error": 503,
}


def _respond(result, created=False):
    if result.success:
        return jsonify(result.to_dict()), 201 if created else 200
    return jsonify({"error": result.error, "error_kind": result.error_kind}), STATUS_CODES.get(result.error_kind, 500)


def _body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def create_app(engine=None):
    """Build the Flask app around an ExperimentEngine (from GROWTH_* env if not given)."""
    app = Flask(__name__)
    app.config["ENGINE"] = engine or ExperimentEngine.from_env()

    def eng() -> ExperimentEngine:
        return app.config["ENGINE"]

    @app.route("/ping", methods=["GET"])
    def ping():
        return "pong"

    @app.route("/experiments", methods=["GET"])
    def list_experiments():
        return _respond(eng().list_experiments(
            status=request.args.get("status"),
            category=request.args.get("category"),
        ))

    @app.route("/experiments", methods=["POST"])
    def create_experiment():
        data = _body()
        if not data:
            return jsonify({"error": "Empty request", "error_kind": "validation_error"}), 400
        return _respond(eng().create(data), created=True)

    @app.route("/experiments/<experiment_id>", methods=["GET"])
    def get_experiment(experiment_id):
        return _respond(eng().get_experiment(experiment_id))

    @app.route("/experiments/<experiment_id>", methods=["PATCH"])
    def update_experiment(experiment_id):
        return _respond(eng().update(experiment_id, _body()))

    @app.route("/experiments/<experiment_id>/start", methods=["POST"])
    def start_experiment(experiment_id):
        return _respond(eng().start(experiment_id))

    @app.route("/experiments/<experiment_id>/stop", methods=["POST"])
    def stop_experiment(experiment_id):
        return _respond(eng().stop(experiment_id, reason=_body().get("reason")))

    @app.route("/experiments/<experiment_id>/complete", methods=["POST"])
    def complete_experiment(experiment_id):
        return _respond(eng().complete(experiment_id))

    @app.route("/experiments/<experiment_id>/winner", methods=["POST"])
    def declare_winner(experiment_id):
        return _respond(eng().declare_winner(experiment_id, _body().get("variant")))

    @app.route("/experiments/<experiment_id>/promote", methods=["POST"])
    def promote(experiment_id):
        data = _body()
        return _respond(eng().promote(
            experiment_id,
            data.get("variant"),
            mark_promoted=bool(data.get("mark_promoted", True)),
        ))

    @app.route("/experiments/<experiment_id>/assignments/<subject_id>", methods=["GET", "POST"])
    def resolve_assignment(experiment_id, subject_id):
        return _respond(eng().resolve_assignment(experiment_id, subject_id))

    @app.route("/experiments/<experiment_id>/results", methods=["GET"])
    def results(experiment_id):
        cached = request.args.get("cached", "false").lower() in ("1", "true", "yes")
        return _respond(eng().get_results_summary(experiment_id, cached=cached))

    @app.route("/experiments/<experiment_id>/audit", methods=["GET"])
    def audit(experiment_id):
        return _respond(eng().audit_trail(experiment_id))

    @app.route("/surfaces/<category>/config/<subject_id>", methods=["GET"])
    def surface_config(category, subject_id):
        return _respond(eng().resolve_for_surface(category, subject_id))

    @app.route("/surfaces/<surface>/live", methods=["GET"])
    def live_config(surface):
        result = eng().get_live_config(surface)
        if result.success and result.value is None:
            return jsonify({"error": f"No live config for '{surface}'", "error_kind": "not_found"}), 404
        return _respond(result)

    @app.route("/snapshot", methods=["GET"])
    def snapshot():
        return _respond(eng().get_snapshot())

    @app.route("/sweep", methods=["POST"])
    def sweep():
        return _respond(eng().run_scheduled_sweep())

    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    create_app().run(host="0.0.0.0", port=5000)
