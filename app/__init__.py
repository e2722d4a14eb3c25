"""
Creates and returns main flask app
"""

import threading

from flask import Flask, jsonify
from flask_cors import CORS

from .rebalancer.routes import rebalancer_blueprint, set_engine, start_engine


def create_app(config_path=None, engine=None, start=True):
    """Create Flask app; the engine runs on a background thread unless start is False"""
    app = Flask(__name__)
    CORS(app)

    @app.route("/health", methods=["GET"])
    def health_check():
        return jsonify({"status": "healthy"}), 200

    if start:
        engine_thread = threading.Thread(target=start_engine, args=(config_path, engine), daemon=True)
        engine_thread.start()
    elif engine is not None:
        set_engine(engine)

    # Register the rebalancer blueprint after starting the engine
    app.register_blueprint(rebalancer_blueprint, url_prefix="/rebalancer")

    return app
