import hmac
import logging
from functools import wraps

from flask import current_app, g, jsonify, request

logger = logging.getLogger(__name__)


def _split(value):
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def _gateway_trusted() -> bool:
    secret = current_app.config.get("AUTH_GATEWAY_SECRET")
    if not secret:
        return True
    presented = request.headers.get("X-Auth-Gateway-Key", "")
    return hmac.compare_digest(presented.encode("utf-8"), secret.encode("utf-8"))


def load_current_identity():
    """
    Identity is asserted by the upstream auth gateway. Without the shared
    gateway key (when one is configured) the request is treated as anonymous.
    """
    g.identity = None
    g.email = None
    g.roles = []
    g.orgs = []

    identity = (request.headers.get("X-Auth-Identity") or "").strip()
    if not identity:
        return
    if not _gateway_trusted():
        logger.warning("Ignoring identity headers without a valid gateway key from %s", request.remote_addr)
        return

    g.identity = identity[:128]
    g.email = (request.headers.get("X-Auth-Email") or "").strip() or None
    g.roles = [r.upper() for r in _split(request.headers.get("X-Auth-Roles"))]
    g.orgs = _split(request.headers.get("X-Auth-Orgs"))


def identity_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "identity", None) is None:
            return jsonify(error="Authentication required"), 401
        return fn(*args, **kwargs)
    return wrapper
