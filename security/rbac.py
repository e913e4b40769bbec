from functools import wraps
from flask import g, jsonify

SUPER_ADMIN = "SUPER_ADMIN"


def current_roles() -> set:
    return set(getattr(g, "roles", None) or ())


def has_role(role_name: str) -> bool:
    roles = current_roles()
    return SUPER_ADMIN in roles or role_name in roles


def can_act_on(resource) -> bool:
    """ADMIN of the resource's organization (or SUPER_ADMIN anywhere)."""
    roles = current_roles()
    if SUPER_ADMIN in roles:
        return True
    if "ADMIN" not in roles:
        return False
    orgs = set(getattr(g, "orgs", None) or ())
    return not orgs or resource.organization_id in orgs


def require_roles(*role_names: str):
    """
    Usage: @require_roles("ADMIN")
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if getattr(g, "identity", None) is None:
                return jsonify(error="Authentication required"), 401

            roles = current_roles()
            if SUPER_ADMIN not in roles and not roles.intersection(set(role_names)):
                return jsonify(error="Forbidden"), 403

            return fn(*args, **kwargs)
        return wrapper
    return decorator
