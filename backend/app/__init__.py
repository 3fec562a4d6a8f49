"""Flask application factory."""

import hashlib
import json
import os
import threading
from flask import Flask
from flask_cors import CORS

from services.jira_report import DEFAULT_CONFIG, ReportCaches

CONFIG_PATH = os.path.join(
    os.path.dirname(__file__), "..", "config", "report-config.json"
)


def load_report_config(app, config_path=CONFIG_PATH):
    """Load report settings from config file, falling back to defaults."""
    config = dict(DEFAULT_CONFIG)

    if os.path.exists(config_path):
        try:
            with open(config_path, "r") as f:
                config.update(json.load(f))
                app.logger.info(f"Loaded report config from {config_path}")
        except (json.JSONDecodeError, IOError) as e:
            app.logger.warning(f"Failed to load report config: {e}")
    else:
        app.logger.info("No report-config.json found, using defaults")

    app.config["REPORT_CONFIG"] = config
    return config


def cache_key(server, email, token):
    """Server plus a digest of the credentials; the token itself is never stored."""
    digest = hashlib.sha256(f"{email}:{token}".encode("utf-8")).hexdigest()
    return server, digest


def get_report_caches(app, server, email, token):
    """Caches for a Jira server and set of credentials, created on first use."""
    key = cache_key(server, email, token)
    state = app.extensions["jira_report"]
    with state["lock"]:
        caches = state["caches"].get(key)
        if caches is None:
            caches = ReportCaches(app.config["REPORT_CONFIG"])
            state["caches"][key] = caches
        return caches


def create_app(config_overrides=None):
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # Enable CORS for frontend
    CORS(app, resources={
        r"/api/*": {
            "origins": ["http://localhost:5173", "http://127.0.0.1:5173"],
            "methods": ["GET", "DELETE", "OPTIONS"],
            "allow_headers": [
                "Content-Type",
                "X-Jira-Token", "X-Jira-Email", "X-Jira-Server"
            ]
        }
    })

    load_report_config(app)
    if config_overrides:
        app.config["REPORT_CONFIG"].update(config_overrides)

    app.extensions["jira_report"] = {"caches": {}, "lock": threading.Lock()}

    # Register blueprints
    from app.api import jira_report
    app.register_blueprint(jira_report.bp)

    # Health check endpoint
    @app.route("/health")
    def health():
        return {"status": "ok"}

    return app
