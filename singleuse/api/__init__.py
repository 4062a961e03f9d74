"""API blueprint shared by the endpoint modules in this package."""

from flask import Blueprint

api_bp = Blueprint("api", __name__)
