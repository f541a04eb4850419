"""
Access vocabulary for the platform.

Roles are a closed set mirroring the ``user_role`` enum in the database.
Module names are validated identifiers because administrators can create new
modules at runtime; the built-in ones are listed in ``KnownModule``.

``ROLE_DEFAULT_MODULE_PRIORITY`` is the single table used to derive a user's
default landing module from their roles.
"""

import logging
import re
from enum import Enum
from typing import Annotated, Iterable, List, Tuple

from pydantic import AfterValidator

logger = logging.getLogger(__name__)


class RoleName(str, Enum):
    SUPER_ADMIN = "superAdmin"
    HEALTHCARE_PROVIDER = "healthcareProvider"
    NURSE = "nurse"
    CASE_MANAGER = "caseManager"
    ONBOARDING_TEAM = "onboardingTeam"
    PATIENT_CAREGIVER = "patientCaregiver"
    FINANCE_TEAM = "financeTeam"
    CONTRACT_TEAM = "contractTeam"
    WORKFLOW_MANAGER = "workflowManager"


class KnownModule(str, Enum):
    DASHBOARD = "dashboard"
    ONBOARDING = "onboarding"
    PATIENTS = "patients"
    FACILITIES = "facilities"
    USERS = "users"
    MODULES = "modules"
    REPORTS = "reports"
    SECURITY = "security"
    TESTING = "testing"


MODULE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")


def validate_module_name(value: str) -> str:
    """Normalise and validate a module identifier (lower-case slug)."""
    if not isinstance(value, str):
        raise ValueError("Module name must be a string")
    normalized = value.strip().lower()
    if not MODULE_NAME_PATTERN.match(normalized):
        raise ValueError(f"Invalid module name: {value!r}")
    return normalized


ModuleName = Annotated[str, AfterValidator(validate_module_name)]


# Ordered: the first role in this table that the user holds decides the module.
ROLE_DEFAULT_MODULE_PRIORITY: Tuple[Tuple[RoleName, KnownModule], ...] = (
    (RoleName.ONBOARDING_TEAM, KnownModule.ONBOARDING),
    (RoleName.HEALTHCARE_PROVIDER, KnownModule.PATIENTS),
    (RoleName.NURSE, KnownModule.PATIENTS),
    (RoleName.PATIENT_CAREGIVER, KnownModule.PATIENTS),
    (RoleName.CASE_MANAGER, KnownModule.FACILITIES),
)

FALLBACK_MODULE = KnownModule.DASHBOARD


def parse_roles(names: Iterable[str]) -> List[RoleName]:
    """Map raw role names to RoleName, dropping unknown ones. Keeps first-seen order."""
    roles: List[RoleName] = []
    for name in names:
        try:
            role = RoleName(name)
        except ValueError:
            logger.warning(f"Ignoring unknown role name: {name!r}")
            continue
        if role not in roles:
            roles.append(role)
    return roles


def is_super_admin(roles: Iterable[RoleName]) -> bool:
    return RoleName.SUPER_ADMIN in set(roles)


def default_module_for_roles(roles: Iterable[RoleName]) -> str:
    held = set(roles)
    for role, module in ROLE_DEFAULT_MODULE_PRIORITY:
        if role in held:
            return module.value
    return FALLBACK_MODULE.value


def module_path(module_name: str) -> str:
    return f"/{module_name}"
