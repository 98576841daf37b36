"""RBAC (Role-Based Access Control) module for Safee Core.

This module defines the permission model, member roles, and access control utilities.
"""

from .permissions import Permission, Resource, Action, PERMISSION_DEFINITIONS
from .roles import DEFAULT_ROLES, get_role_permissions
from .checker import PermissionChecker, load_member_permissions

__all__ = [
    "Permission",
    "Resource",
    "Action",
    "PERMISSION_DEFINITIONS",
    "DEFAULT_ROLES",
    "get_role_permissions",
    "PermissionChecker",
    "load_member_permissions",
]
