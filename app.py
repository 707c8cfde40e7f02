"""
Main Flask application entry point for the storefront API
"""
import logging
import os

from flask import Flask, jsonify, request
from flask_login import LoginManager

from config import Config
from models import db
from models.user import User
from utils.mail import mail
from utils.ratelimit import limiter

# Initialize login manager (no DB access at import time)
login_manager = LoginManager()


@login_manager.user_loader
def load_user(user_id):
    """Load user for Flask-Login (runs in request context)."""
    return db.session.get(User, int(user_id))


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"success": False, "message": "Login required."}), 401


def create_app(config_class=Config):
    """Application factory pattern. DB init runs inside app_context; non-fatal on failure."""
    app = Flask(__name__)
    app.config.from_object(config_class)
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    db.init_app(app)
    login_manager.init_app(app)
    mail.init_app(app)
    limiter.init_app(app)

    @app.errorhandler(404)
    def handle_404_error(e):
        if request.path.startswith("/api/"):
            return jsonify({"success": False, "message": "Not found."}), 404
        return e

    @app.errorhandler(405)
    def handle_405_error(e):
        if request.path.startswith("/api/"):
            return jsonify({"success": False, "message": "Method not allowed."}), 405
        return e

    @app.errorhandler(500)
    def handle_500_error(e):
        app.logger.error("Unhandled error on %s: %s", request.path, e)
        return jsonify({"success": False, "message": "Internal server error. Please try again later."}), 500

    # Create tables and seed only inside app context; do not crash if DB temporarily unavailable
    with app.app_context():
        try:
            db.create_all()
            seed_shipping_settings()
        except Exception as e:
            logging.getLogger(__name__).warning("Database init/seed skipped (non-fatal): %s", e)

    from routes import auth_bp, shipping_bp, payments_bp, cron_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(shipping_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(cron_bp)

    @app.route("/health")
    def health():
        return jsonify({"status": "ok"})

    return app


def seed_shipping_settings():
    """Seed default shipping settings if none exist"""
    from models.shipping import ShippingSettings

    if ShippingSettings.query.count() > 0:
        return

    settings = ShippingSettings(
        base_shipping_fee=int(os.environ.get("SEED_BASE_SHIPPING_FEE", 3000)),
        free_shipping_threshold=int(os.environ.get("SEED_FREE_SHIPPING_THRESHOLD", 50000)),
        jeju_additional_fee=3000,
        mountain_additional_fee=5000,
        is_active=True,
    )
    db.session.add(settings)
    try:
        db.session.commit()
        logging.getLogger(__name__).info("Default shipping settings seeded")
    except Exception as e:
        db.session.rollback()
        logging.getLogger(__name__).error("Error seeding shipping settings: %s", e)


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    create_app().run(host="0.0.0.0", port=port, debug=os.environ.get("FLASK_DEBUG", "false").lower() in ("true", "1"))
