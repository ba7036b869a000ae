"""Flask application factory for the dashmark web UI."""

import tempfile
import threading
from pathlib import Path

from flask import Flask, jsonify

from dashmark.engine import WatermarkSession


def create_app(work_dir: Path | None = None, session: WatermarkSession | None = None) -> Flask:
    app = Flask(__name__)
    app.config["WORK_DIR"] = work_dir or Path(tempfile.mkdtemp(prefix="dashmark_"))
    app.config["MAX_CONTENT_LENGTH"] = 10 * 1024 * 1024 * 1024  # 10 GB
    app.config["SESSION"] = session or WatermarkSession()
    app.config["RUN_LOCK"] = threading.Lock()

    from dashmark.web.routes import bp
    app.register_blueprint(bp)

    @app.errorhandler(413)
    def request_entity_too_large(error):
        return jsonify({"error": "File too large"}), 413

    return app
