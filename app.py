# app.py — Cloud Run entrypoint (checkout / payment API)
from flask import Flask, request, jsonify
from flask_cors import CORS
from datetime import datetime, timezone
import logging
import os

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("app")


def create_app():
    app = Flask(__name__)
    app.secret_key = os.getenv("FLASK_SECRET_KEY", "dev-secret")  # override via ENV
    frontend_origin = os.environ.get("FRONTEND_ORIGIN", "http://localhost:3000")
    CORS(app, resources={r"/api/*": {"origins": [frontend_origin]}})

    from checkout.blueprint import checkout_bp
    app.register_blueprint(checkout_bp)
    logger.info("Registered checkout blueprint")

    @app.before_request
    def _log_request():
        logger.info("REQ %s %s", request.method, request.path)

    @app.get("/")
    def root():
        return jsonify({"ok": True, "service": "coupon-checkout-api", "time": datetime.now(timezone.utc).isoformat()}), 200

    @app.get("/healthz")
    def healthz():
        return jsonify({"status": "ok"}), 200

    return app


app = create_app()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port)
