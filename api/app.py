import os
import sys
import datetime
import logging

# --- ROBUST PATH SETUP ---
current_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(current_dir)
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from flask import Flask, jsonify, abort, request
from pydantic import BaseModel, conint, ValidationError
from typing import Any, Dict, Optional
from waitress import serve

from config import settings
from core.batch_engine import BatchEngine, build_default_engine
from core.errors import (
    BatchEngineError, CaptureTimeout, InvalidTransition, NoHistoricalData, NotFound, ReconciliationOutcome,
    StorageUnavailable, TelemetryUnavailable, ValidationFailed,
)
from core.models.audit import AuditEventType, AuditFilter
from core.models.lab import AssociationStatus
from core.models.requests import (
    BatchFilter, CloseBatchRequest, CreateBatchRequest, HistoricalBatchRequest, LabResultPayload,
    RecalculateBatchRequest, RejectRecalculationRequest, VoidBatchRequest,
)
from api.auth import require_api_key

# --- Logging and App Setup ---
logger = logging.getLogger("batch_api")
app = Flask(__name__)

ENGINE_CONFIG_KEY = "BATCH_ENGINE"

ERROR_STATUS = (
    (ValidationFailed, 400),
    (NotFound, 404),
    (NoHistoricalData, 404),
    (InvalidTransition, 409),
    (ReconciliationOutcome, 409),
    (TelemetryUnavailable, 502),
    (StorageUnavailable, 503),
    (CaptureTimeout, 504),
)


# --- Pydantic Models ---
class OperatorPayload(BaseModel):
    operator: str


class AssociationStatusPayload(BaseModel):
    status: AssociationStatus
    operator: str


class AuditQueryArgs(BaseModel):
    batch_id: Optional[str] = None
    event_type: Optional[AuditEventType] = None
    actor: Optional[str] = None
    start_time: Optional[datetime.datetime] = None
    end_time: Optional[datetime.datetime] = None
    limit: Optional[conint(gt=0)] = 500

    def to_filter(self) -> AuditFilter:
        return AuditFilter(batch_id=self.batch_id, event_type=self.event_type, actor=self.actor,
                           start_time=self.start_time, end_time=self.end_time, limit=self.limit)


# --- Engine ---
def get_engine() -> BatchEngine:
    engine = app.config.get(ENGINE_CONFIG_KEY)
    if engine is None:
        engine = build_default_engine()
        app.config[ENGINE_CONFIG_KEY] = engine
    return engine


def json_body(**overrides) -> Dict[str, Any]:
    body = request.get_json(silent=True)
    if body is None:
        if request.content_length:
            abort(400, description="Request content type must be application/json.")
        body = {}
    if not isinstance(body, dict):
        abort(400, description="Request body must be a JSON object.")
    return {**body, **overrides}


# --- Error Handlers ---
@app.errorhandler(BatchEngineError)
def batch_engine_error(e: BatchEngineError):
    status = next((code for cls, code in ERROR_STATUS if isinstance(e, cls)), 500)
    if status >= 500:
        logger.warning(f"Batch engine error ({e.kind}): {e.reason}")
    return jsonify(e.to_dict()), status


@app.errorhandler(ValidationError)
def payload_validation_error(e: ValidationError):
    return jsonify({"error": "Bad Request",
                    "details": e.errors(include_url=False, include_context=False, include_input=False)}), 400


@app.errorhandler(400)
def bad_request(e): return jsonify({"error": "Bad Request", "details": getattr(e, 'description', str(e))}), 400
@app.errorhandler(401)
def unauthorized(e): return jsonify(error="Unauthorized"), 401
@app.errorhandler(404)
def resource_not_found(e): return jsonify(error=getattr(e, 'description', "Resource not found")), 404
@app.errorhandler(500)
def internal_server_error(e):
    logger.error(f"API Internal Server Error: {e}", exc_info=True)
    return jsonify(error="Internal server error occurred."), 500


# --- API Endpoints ---
@app.route('/health', methods=['GET'])
def health_check():
    return jsonify(status="ok")

# Batches
@app.route('/api/v1/batches', methods=['POST'])
@require_api_key
def create_batch():
    batch = get_engine().create_batch(CreateBatchRequest(**json_body()))
    return jsonify(batch.to_dict()), 201

@app.route('/api/v1/batches/historical', methods=['POST'])
@require_api_key
def create_historical_batch():
    batch = get_engine().create_historical_batch(HistoricalBatchRequest(**json_body()))
    return jsonify(batch.to_dict()), 201

@app.route('/api/v1/batches', methods=['GET'])
@require_api_key
def list_batches():
    page = get_engine().list_batches(BatchFilter(**request.args.to_dict()))
    return jsonify(page.to_dict())

@app.route('/api/v1/batches/statistics', methods=['GET'])
@require_api_key
def batch_statistics():
    stats = get_engine().batch_statistics(request.args.get('tank_id'))
    return jsonify(stats.to_dict())

@app.route('/api/v1/batches/<string:batch_id>', methods=['GET'])
@require_api_key
def get_batch(batch_id):
    return jsonify(get_engine().get_batch(batch_id).to_dict())

@app.route('/api/v1/batches/<string:batch_id>/close', methods=['POST'])
@require_api_key
def close_batch(batch_id):
    batch = get_engine().close_batch(CloseBatchRequest(**json_body(batch_id=batch_id)))
    return jsonify(batch.to_dict())

@app.route('/api/v1/batches/<string:batch_id>/void', methods=['POST'])
@require_api_key
def void_batch(batch_id):
    batch = get_engine().void_batch(VoidBatchRequest(**json_body(batch_id=batch_id)))
    return jsonify(batch.to_dict())

@app.route('/api/v1/batches/<string:batch_id>/recalculate/preview', methods=['POST'])
@require_api_key
def preview_recalculation(batch_id):
    result = get_engine().preview_recalculation(RecalculateBatchRequest(**json_body(batch_id=batch_id)))
    return jsonify(result.to_dict())

@app.route('/api/v1/batches/<string:batch_id>/recalculate', methods=['POST'])
@require_api_key
def recalculate_batch(batch_id):
    result = get_engine().recalculate_batch(RecalculateBatchRequest(**json_body(batch_id=batch_id)))
    return jsonify(result.to_dict()), 202 if result.requires_approval else 200

@app.route('/api/v1/batches/<string:batch_id>/recalculations', methods=['GET'])
@require_api_key
def get_recalculations(batch_id):
    engine = get_engine()
    return jsonify({
        "pending": [r.to_dict() for r in engine.pending_recalculations(batch_id)],
        "history": [h.to_dict() for h in engine.recalculation_history(batch_id)],
    })

@app.route('/api/v1/batches/<string:batch_id>/recalculations/<string:result_id>/approve', methods=['POST'])
@require_api_key
def approve_recalculation(batch_id, result_id):
    payload = OperatorPayload(**json_body())
    batch = get_engine().approve_recalculation(batch_id, result_id, payload.operator)
    return jsonify(batch.to_dict())

@app.route('/api/v1/batches/<string:batch_id>/recalculations/<string:result_id>/reject', methods=['POST'])
@require_api_key
def reject_recalculation(batch_id, result_id):
    payload = RejectRecalculationRequest(**json_body())
    engine = get_engine()
    engine.reject_recalculation(batch_id, result_id, payload.operator, payload.reason)
    return jsonify(engine.get_batch(batch_id).to_dict())

@app.route('/api/v1/batches/<string:batch_id>/audit', methods=['GET'])
@require_api_key
def get_batch_audit(batch_id):
    return jsonify([e.to_dict() for e in get_engine().audit_trail(batch_id=batch_id)])

# Laboratory
@app.route('/api/v1/lab-results', methods=['POST'])
@require_api_key
def submit_lab_result():
    lab_result = LabResultPayload(**json_body()).to_lab_result()
    association = get_engine().associate_lab_result(lab_result)
    return jsonify(association.to_dict()), 201

@app.route('/api/v1/lab-results/associations', methods=['GET'])
@require_api_key
def list_lab_associations():
    associations = get_engine().lab_associations(
        batch_id=request.args.get('batch_id'),
        tank_id=request.args.get('tank_id'),
        pending_only=request.args.get('pending', 'false').lower() == 'true',
    )
    return jsonify([a.to_dict() for a in associations])

@app.route('/api/v1/lab-results/associations/<string:association_id>', methods=['GET'])
@require_api_key
def get_lab_association(association_id):
    return jsonify(get_engine().lab_association(association_id).to_dict())

@app.route('/api/v1/lab-results/associations/<string:association_id>/status', methods=['POST'])
@require_api_key
def update_lab_association(association_id):
    payload = AssociationStatusPayload(**json_body())
    association = get_engine().update_lab_association(association_id, payload.status, payload.operator)
    return jsonify(association.to_dict())

@app.route('/api/v1/lab-results/associations/<string:association_id>/recalculate', methods=['POST'])
@require_api_key
def recalculate_from_lab(association_id):
    payload = OperatorPayload(**json_body())
    result = get_engine().recalculate_from_lab(association_id, payload.operator)
    return jsonify(result.to_dict()), 202 if result.requires_approval else 200

# Movement
@app.route('/api/v1/tanks/<string:tank_id>/movement', methods=['GET'])
@require_api_key
def get_tank_movement(tank_id):
    engine = get_engine()
    event = engine.latest_movement(tank_id)
    return jsonify({
        "tank_id": tank_id,
        "monitored": tank_id in engine.movement.monitored_tanks(),
        "movement": event.to_dict() if event else None,
        "suggestion": engine.suggest_batch(tank_id).to_dict(),
    })

@app.route('/api/v1/tanks/<string:tank_id>/movement/monitor', methods=['POST'])
@require_api_key
def start_tank_monitoring(tank_id):
    # HTTP callers poll the latest event; the stream itself is not needed here.
    get_engine().start_monitoring(tank_id).close()
    return jsonify({"tank_id": tank_id, "monitored": True}), 202

@app.route('/api/v1/tanks/<string:tank_id>/movement/monitor', methods=['DELETE'])
@require_api_key
def stop_tank_monitoring(tank_id):
    if not get_engine().stop_monitoring(tank_id):
        abort(404, f"Tank '{tank_id}' is not being monitored.")
    return jsonify({"tank_id": tank_id, "monitored": False})

@app.route('/api/v1/tanks/<string:tank_id>/movement/dismiss', methods=['POST'])
@require_api_key
def dismiss_batch_suggestion(tank_id):
    until = get_engine().dismiss_suggestion(tank_id)
    return jsonify({"tank_id": tank_id, "suppressed_until": until.isoformat()})

@app.route('/api/v1/tanks/<string:tank_id>/data-availability', methods=['GET'])
@require_api_key
def get_data_availability(tank_id):
    return jsonify(get_engine().data_availability(tank_id))

# Audit
@app.route('/api/v1/audit', methods=['GET'])
@require_api_key
def query_audit():
    args = AuditQueryArgs(**request.args.to_dict())
    return jsonify([e.to_dict() for e in get_engine().audit_trail(audit_filter=args.to_filter())])

@app.route('/api/v1/audit/statistics', methods=['GET'])
@require_api_key
def audit_statistics():
    args = AuditQueryArgs(**request.args.to_dict())
    return jsonify(get_engine().audit_statistics(args.to_filter()))

# --- Main Execution Block ---
if __name__ == '__main__':
    logger.info(f"Starting batch API server with Waitress on http://0.0.0.0:{settings.FLASK_PORT}")
    serve(app, host='0.0.0.0', port=settings.FLASK_PORT, threads=settings.API_THREADS)
