"""Liveness probe for load balancers: ``GET /health``. No auth, no store access."""

from flask import jsonify

from singleuse.api import api_bp


@api_bp.route("/health", methods=["GET"])
def health_check():
    return jsonify({"status": "healthy", "message": "Single-use URL API is running"})
