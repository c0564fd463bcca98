from flask import Blueprint

api_bp = Blueprint("api", __name__)

from wms_sync.api import routes  # noqa: E402,F401
