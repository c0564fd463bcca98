from flask import Blueprint

# Blueprint for inbound WMS webhooks
webhooks_bp = Blueprint("webhooks", __name__)

from wms_sync.webhooks import routes  # noqa: E402,F401
