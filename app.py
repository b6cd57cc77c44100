import os, io, secrets, argparse, functools, hmac, hashlib, logging
from flask import (
    Flask, Blueprint, request, session, jsonify, abort, send_file, current_app, g
)
from werkzeug.exceptions import HTTPException

from errors import AssessmentError, ValidationError
from models import db, User
from scoring import PRESSURE_MODES
import ledger
import report
from weights import WeightConfig, from_percent_payload, to_percent_payload

logger = logging.getLogger(__name__)

# --------------------------------------------------------------------
# Config
# --------------------------------------------------------------------
APP_SECRET = os.environ.get("APP_SECRET") or secrets.token_hex(32)
DB_PATH = os.path.abspath(os.environ.get("ASSESSMENT_DB", "assessment.db"))
DB_URI  = os.environ.get("DATABASE_URL") or f"sqlite:///{DB_PATH}"
PRESSURE_MODE = os.environ.get("PRESSURE_MODE", "count")
PRESSURE_AT_RISK_RATIO = os.environ.get("PRESSURE_AT_RISK_RATIO", "0.8")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

STAFF_ROLES = ("instructor", "admin")
READ_ROLES = ("instructor", "admin", "mentor")

api = Blueprint("assessment", __name__, url_prefix="/api")

def create_app(db_path=DB_URI, **overrides):
    app = Flask(__name__)
    app.config["SECRET_KEY"] = APP_SECRET
    app.config["SQLALCHEMY_DATABASE_URI"] = db_path
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SESSION_COOKIE_NAME"] = "assessment_session"
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    app.config["PRESSURE_MODE"] = PRESSURE_MODE
    app.config["PRESSURE_AT_RISK_RATIO"] = PRESSURE_AT_RISK_RATIO
    app.config.update(overrides)
    _check_pressure_config(app.config)
    if not logging.getLogger().handlers:
        logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    db.init_app(app)
    app.register_blueprint(api)
    with app.app_context():
        db.create_all()
    return app

def _check_pressure_config(config):
    if config["PRESSURE_MODE"] not in PRESSURE_MODES:
        raise ValueError(f"PRESSURE_MODE must be one of {', '.join(PRESSURE_MODES)}")
    try:
        ratio = float(config["PRESSURE_AT_RISK_RATIO"])
    except (TypeError, ValueError):
        raise ValueError(f"PRESSURE_AT_RISK_RATIO must be a number, got {config['PRESSURE_AT_RISK_RATIO']!r}") from None
    if not 0.0 < ratio <= 1.0:
        raise ValueError("PRESSURE_AT_RISK_RATIO must be in (0, 1]")
    config["PRESSURE_AT_RISK_RATIO"] = ratio

# --------------------------------------------------------------------
# CSRF helpers (JSON header)
# --------------------------------------------------------------------
def _csrf_key():
    if "csrf_key" not in session:
        session["csrf_key"] = secrets.token_hex(16)
    return session["csrf_key"]

def csrf_token():
    secret = current_app.config["SECRET_KEY"].encode()
    key = _csrf_key().encode()
    return hmac.new(secret, key, hashlib.sha256).hexdigest()

def verify_csrf_header():
    sent = request.headers.get("X-CSRF-Token", "")
    return hmac.compare_digest(sent, csrf_token())

# --------------------------------------------------------------------
# Auth/session helpers
# --------------------------------------------------------------------
def current_user():
    uid = session.get("user_id")
    return db.session.get(User, uid) if uid else None

def require_api_user(*roles, csrf=False):
    def deco(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            u = current_user()
            if not u:
                abort(401, description="Login required.")
            if roles and u.role not in roles:
                logger.warning("User %s (%s) denied %s %s", u.email, u.role, request.method, request.path)
                abort(403, description="You don't have permission for this action.")
            if csrf and not verify_csrf_header():
                abort(400, description="bad csrf")
            g.user = u
            return fn(*args, **kwargs)
        return wrapper
    return deco

# --------------------------------------------------------------------
# Responses & errors
# --------------------------------------------------------------------
def ok(data, message, **metadata):
    body = {"success": True, "message": message, "data": data}
    if metadata:
        body["metadata"] = metadata
    return jsonify(body)

@api.errorhandler(AssessmentError)
def handle_assessment_error(exc):
    return jsonify(exc.to_dict()), exc.status_code

@api.errorhandler(HTTPException)
def handle_http_error(exc):
    body = {"success": False, "error": exc.name.lower().replace(" ", "_"), "message": exc.description}
    return jsonify(body), exc.code

def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data

def _project_id_arg():
    project_id = request.args.get("projectId", type=int)
    if project_id is None:
        raise ValidationError("projectId query parameter is required.")
    return project_id

# --------------------------------------------------------------------
# Session
# --------------------------------------------------------------------
@api.post("/login")
def login():
    data = _json_body()
    email = (data.get("email") or "").strip().lower()
    u = User.query.filter_by(email=email).first()
    if not u or not u.check_password(data.get("password") or ""):
        logger.warning("Failed login for %s", email or "<blank>")
        abort(401, description="Invalid email or password.")
    session.clear()
    session["user_id"] = u.id
    return ok({"userId": u.id, "name": u.name, "role": u.role, "csrfToken": csrf_token()}, "Logged in")

@api.post("/logout")
def logout():
    session.clear()
    return ok(None, "Logged out")

@api.route("/csrf")
@require_api_user()
def csrf():
    return ok({"csrfToken": csrf_token()}, "CSRF token issued")

# --------------------------------------------------------------------
# Contribution scores
# --------------------------------------------------------------------
@api.post("/contribution-scores/calculate")
@require_api_user(*STAFF_ROLES, csrf=True)
def contribution_calculate():
    project_id = _project_id_arg()
    ledger.recalculate(project_id, actor=g.user)
    rows = ledger.scored_rows(project_id)
    return ok(rows, "Contribution scores calculated successfully", count=len(rows))

@api.route("/contribution-scores/projects/<int:project_id>")
@require_api_user(*READ_ROLES)
def contribution_project_scores(project_id):
    rows = ledger.scored_rows(project_id)
    return ok(rows, "Contribution scores retrieved successfully", count=len(rows))

@api.route("/contribution-scores/projects/<int:project_id>/users/<int:student_id>")
@require_api_user(*READ_ROLES)
def contribution_student_score(project_id, student_id):
    row = ledger.score_for_student(project_id, student_id)
    return ok(row.to_dict(), "Contribution score retrieved successfully")

@api.route("/contribution-scores/groups/<int:group_id>")
@require_api_user(*READ_ROLES)
def contribution_group_scores(group_id):
    group, rows = ledger.group_scores(group_id)
    return ok(rows, "Contribution scores for group retrieved successfully",
              count=len(rows), groupId=group.id, groupName=group.name)

@api.route("/contribution-scores/projects/<int:project_id>/assessment")
@require_api_user(*READ_ROLES)
def contribution_assessment(project_id):
    return ok(ledger.project_assessment(project_id), "Project assessment retrieved successfully")

@api.put("/contribution-scores/<int:score_id>/adjust")
@require_api_user(*STAFF_ROLES, csrf=True)
def contribution_adjust(score_id):
    data = _json_body()
    row = ledger.adjust_score(score_id, data.get("adjustedScore"), data.get("adjustmentReason"), actor=g.user)
    return ok(row.to_dict(), "Contribution score adjusted successfully")

@api.delete("/contribution-scores/<int:score_id>/adjust")
@require_api_user(*STAFF_ROLES, csrf=True)
def contribution_clear_adjustment(score_id):
    row = ledger.clear_adjustment(score_id, actor=g.user)
    return ok(row.to_dict(), "Contribution score adjustment cleared")

@api.put("/contribution-scores/projects/<int:project_id>/finalize")
@require_api_user(*STAFF_ROLES, csrf=True)
def contribution_finalize(project_id):
    rows = ledger.finalize(project_id, actor=g.user)
    return ok([r.to_dict() for r in rows], "Contribution scores finalized successfully",
              count=len(rows), assessmentStatus="FINALIZED")

# --------------------------------------------------------------------
# Pressure scores
# --------------------------------------------------------------------
@api.route("/projects/<int:project_id>/groups/<int:group_id>/pressure-scores")
@require_api_user(*READ_ROLES)
def group_pressure_scores(project_id, group_id):
    results = ledger.group_pressure(project_id, group_id, **_pressure_settings())
    return ok([r.to_dict() for r in results], "Group pressure scores retrieved successfully",
              groupId=group_id, memberCount=len(results))

def _pressure_settings():
    return {
        "mode": current_app.config["PRESSURE_MODE"],
        "at_risk_ratio": current_app.config["PRESSURE_AT_RISK_RATIO"],
    }

@api.route("/pressure-scores/projects/<int:project_id>")
@require_api_user(*READ_ROLES)
def project_pressure_scores(project_id):
    results = ledger.project_pressure(project_id, **_pressure_settings())
    return ok([r.to_dict() for r in results], "Project pressure scores retrieved successfully",
              count=len(results))

@api.route("/pressure-scores/users/<int:student_id>")
@require_api_user(*READ_ROLES)
def student_pressure_score(student_id):
    result = ledger.student_pressure(_project_id_arg(), student_id, **_pressure_settings())
    return ok(result.to_dict(), "Pressure score retrieved successfully")

# --------------------------------------------------------------------
# Project settings & report
# --------------------------------------------------------------------
@api.route("/projects/<int:project_id>/weight-config")
@require_api_user(*READ_ROLES)
def weight_config_show(project_id):
    project = ledger.get_project(project_id)
    return ok(to_percent_payload(WeightConfig.from_project(project)), "Weight configuration retrieved successfully")

@api.put("/projects/<int:project_id>/weight-config")
@require_api_user(*STAFF_ROLES, csrf=True)
def weight_config_update(project_id):
    project = ledger.get_project(project_id)
    config = from_percent_payload(_json_body(), base=WeightConfig.from_project(project))
    ledger.update_weight_config(project_id, config, actor=g.user)
    return ok(to_percent_payload(config), "Weight configuration updated successfully")

@api.route("/projects/<int:project_id>/report")
@require_api_user(*STAFF_ROLES)
def project_report(project_id):
    assessment = ledger.project_assessment(project_id)
    payload = report.export_assessment(assessment)
    return send_file(io.BytesIO(payload), mimetype=report.XLSX_MIMETYPE,
                     as_attachment=True, download_name=report.report_filename(assessment))

# --------------------------------------------------------------------
# Dev entry
# --------------------------------------------------------------------
def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=5000)
    args = parser.parse_args()
    create_app().run(host=args.host, port=args.port)

if __name__ == "__main__":
    main()
