# voteintegrity/authentication/rbac.py

import logging
from enum import Enum
from functools import wraps

import requests
from flask import current_app
from flask_jwt_extended import get_jwt, verify_jwt_in_request

from voteintegrity.errors import VoteIntegrityError

logger = logging.getLogger(__name__)

# Role-based access for the authority endpoints. The role travels as a
# `role` claim in the JWT. When OPA_URL is configured the decision is
# delegated to the policy engine, otherwise ROLE_PERMISSIONS decides.


class UserRole(Enum):
    VOTER = "voter"
    ELECTION_ADMIN = "election_admin"
    TALLY_AUTHORITY = "tally_authority"


class Permission(Enum):
    CAST_VOTE = "cast_vote"
    VIEW_OWN_STATUS = "view_own_status"
    MANAGE_ELECTIONS = "manage_elections"
    CLOSE_ELECTION = "close_election"
    VIEW_TALLY = "view_tally"


# Role -> Permissions mapping
ROLE_PERMISSIONS = {
    UserRole.VOTER: [
        Permission.CAST_VOTE,
        Permission.VIEW_OWN_STATUS,
    ],
    UserRole.ELECTION_ADMIN: [
        Permission.MANAGE_ELECTIONS,
    ],
    UserRole.TALLY_AUTHORITY: [
        Permission.CLOSE_ELECTION,
        Permission.VIEW_TALLY,
    ],
}


class AccessDenied(VoteIntegrityError):
    """Raised when the caller's role lacks the permission an endpoint requires."""
    reason = "forbidden"
    http_status = 403


class RBACService:
    def has_permission(self, user_role, permission):
        try:
            if isinstance(user_role, str):
                user_role = UserRole(user_role)
            if isinstance(permission, str):
                permission = Permission(permission)
        except ValueError:
            return False
        return permission in ROLE_PERMISSIONS.get(user_role, [])

    def get_permissions(self, user_role):
        if isinstance(user_role, str):
            user_role = UserRole(user_role)
        return ROLE_PERMISSIONS.get(user_role, [])


def opa_check_permission(opa_url, user_role, permission, timeout=2):
    data = {
        "input": {
            "role": str(user_role).lower().strip(),
            "permission": str(permission).lower().strip(),
        }
    }
    try:
        response = requests.post(opa_url, json=data, timeout=timeout)
        if response.status_code == 200:
            return response.json().get("result", False) is True
        logger.warning("OPA answered %s for %s/%s", response.status_code, user_role, permission)
    except (requests.RequestException, ValueError) as e:
        logger.warning("OPA request error: %s", e)
    # Deny when the policy engine cannot be reached
    return False


def check_permission(user_role, permission):
    perm_str = permission.value if isinstance(permission, Enum) else str(permission)
    opa_url = current_app.config.get('OPA_URL')
    if opa_url:
        return opa_check_permission(opa_url, user_role, perm_str)
    return RBACService().has_permission(user_role, perm_str)


def require_permission(permission):
    """Require a valid access token whose `role` claim grants ``permission``."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            verify_jwt_in_request()
            role = get_jwt().get('role')
            if not role or not check_permission(role, permission):
                raise AccessDenied("Role is not allowed to perform this action",
                                   permission=getattr(permission, 'value', str(permission)))
            return func(*args, **kwargs)
        return wrapper
    return decorator
