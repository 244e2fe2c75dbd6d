"""
ClinicSession - Role-Based Access Control (RBAC)

Fine-grained permission control based on account roles.
Policies are defined in policies.yaml and enforced through route dependencies.

Security:
- Deny-by-default: All actions require explicit permission
- Role hierarchy is NOT inherited (explicit grants only)
- All denials are recorded as ACCESS_DENIED security events
"""

from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Set

import yaml


POLICY_PATH = Path(__file__).parent / "policies.yaml"


class Permission(str, Enum):
    """Granular permissions, resource:action."""
    # Clinical records
    READ_PATIENTS = "read:patients"
    WRITE_PATIENTS = "write:patients"
    READ_OWN_RECORDS = "read:own_records"

    # Medication
    WRITE_PRESCRIPTIONS = "write:prescriptions"
    DISPENSE_PRESCRIPTIONS = "dispense:prescriptions"

    # Administration
    READ_AUDIT = "read:audit"
    MANAGE_USERS = "manage:users"


class RBACPolicy:
    """
    Manages role-to-permission mappings loaded from policies.yaml.

    Singleton; reload() re-reads the file.
    """

    _instance: Optional["RBACPolicy"] = None
    _policies: Dict[str, Set[str]] = {}

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._load_policies()
        return cls._instance

    def _load_policies(self, path: Path = POLICY_PATH):
        if not path.exists():
            # Default deny-all if no policy file
            self._policies = {}
            return

        with open(path, "r") as f:
            config = yaml.safe_load(f) or {}

        self._policies = {
            role: set(perms or [])
            for role, perms in config.get("roles", {}).items()
        }

    def reload(self, path: Path = POLICY_PATH) -> None:
        self._load_policies(path)

    def has_permission(self, role: str, permission: Permission) -> bool:
        """
        Check if a role has a specific permission.

        Returns:
            True if permitted, False otherwise (deny-by-default)
        """
        return permission.value in self._policies.get(role, set())

    def get_role_permissions(self, role: str) -> Set[str]:
        return set(self._policies.get(role, set()))
