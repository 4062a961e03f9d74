#
# API routes and endpoints
#
# Routes live in smaller modules under `singleuse.api.*`:
#   - singleuse.api.health: Health check endpoint
#   - singleuse.api.grants: Grant issuance and diagnostics
#   - singleuse.api.edge: Access validation hook
#
# Importing them registers their routes on the shared `api_bp` blueprint.
#
import importlib

from singleuse.api import api_bp

importlib.import_module("singleuse.api.health")
importlib.import_module("singleuse.api.grants")
importlib.import_module("singleuse.api.edge")

__all__ = ["api_bp"]
