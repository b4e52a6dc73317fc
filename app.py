import logging
from datetime import datetime, timedelta

from flask import Flask, jsonify, session
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from config import Config
from extensions import db, limiter, mail, migrate
from routes.academic_year_routes import academic_year_bp
from routes.attendance_routes import attendance_bp
from routes.auth_routes import auth_bp
from routes.class_routes import class_bp
from routes.exam_routes import exam_bp
from routes.fee_routes import fee_bp
from routes.fee_structure_routes import fee_structure_bp
from routes.parent_routes import parent_bp
from routes.payment_routes import payment_bp
from routes.promotion_routes import functions_bp, promotion_bp, rpc_bp
from routes.report_routes import report_bp
from routes.student_routes import student_bp
from routes.teacher_routes import teacher_bp
from utils.errors import AppError

BLUEPRINTS = (
    auth_bp,
    academic_year_bp,
    student_bp,
    teacher_bp,
    class_bp,
    parent_bp,
    attendance_bp,
    exam_bp,
    fee_structure_bp,
    fee_bp,
    payment_bp,
    functions_bp,
    rpc_bp,
    promotion_bp,
    report_bp,
)


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(AppError)
    def _app_error(exc: AppError):
        db.session.rollback()
        return jsonify(exc.to_dict()), exc.status

    @app.errorhandler(HTTPException)
    def _http_error(exc: HTTPException):
        return jsonify({"error": exc.name.lower().replace(" ", "_"), "message": exc.description}), exc.code

    @app.errorhandler(Exception)
    def _unexpected(exc: Exception):
        db.session.rollback()
        app.logger.exception("unhandled error")
        return jsonify({"error": "internal_error", "message": "Unexpected server error"}), 500


def _register_hooks(app: Flask) -> None:
    @app.before_request
    def _enforce_idle_timeout():
        # Signed-in sessions expire after SESSION_IDLE_TIMEOUT_MINUTES without a request
        if not session.get("user_id"):
            return None
        now = datetime.utcnow()
        idle = timedelta(minutes=app.config.get("SESSION_IDLE_TIMEOUT_MINUTES", 30))
        last_seen = session.get("last_seen")
        if last_seen and now - datetime.utcfromtimestamp(last_seen) > idle:
            session.clear()
            return jsonify({"error": "session_expired", "message": "Session expired due to inactivity"}), 401
        session["last_seen"] = now.timestamp()
        return None

    # Set modern security headers on every response
    @app.after_request
    def _set_security_headers(resp):
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "SAMEORIGIN")
        resp.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        resp.headers.setdefault("Permissions-Policy", "geolocation=(), microphone=(), camera=()")
        # HSTS only when cookies marked secure (implies HTTPS)
        if app.config.get("SESSION_COOKIE_SECURE", False):
            resp.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        return resp


def create_app(config_class=Config) -> Flask:
    app = Flask(__name__)
    app.config.from_object(config_class)
    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))

    # Trust reverse proxy headers for scheme/host when enabled
    if app.config.get("TRUST_PROXY"):
        app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)  # type: ignore[assignment]

    db.init_app(app)
    migrate.init_app(app, db)
    mail.init_app(app)
    limiter.init_app(app)

    _register_error_handlers(app)
    _register_hooks(app)
    for blueprint in BLUEPRINTS:
        app.register_blueprint(blueprint)

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "app": app.config.get("APP_NAME")})

    with app.app_context():
        db.create_all()

    return app


if __name__ == "__main__":
    create_app().run(debug=False)
