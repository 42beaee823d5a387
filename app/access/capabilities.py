"""
Role capabilities.

Each role maps to a closed set of capabilities through one exhaustive
match. Adding a Role member without a case here raises at first use.
"""

from enum import Enum

from app.access.exceptions import Forbidden
from app.access.models import Role


class Capability(str, Enum):
    """Operations the access control layer distinguishes."""
    READ_PATIENT_DATA = "read_patient_data"          # still subject to consent
    MANAGE_OWN_CONSENT = "manage_own_consent"
    MANAGE_ANY_CONSENT = "manage_any_consent"
    SUSPEND_CONSENT = "suspend_consent"
    VIEW_PATIENT_CONSENTS = "view_patient_consents"
    BYPASS_CONSENT = "bypass_consent"
    EMERGENCY_OVERRIDE = "emergency_override"
    VIEW_AUDIT_TRAIL = "view_audit_trail"
    VERIFY_LEDGER = "verify_ledger"


_CLINICAL = frozenset({
    Capability.READ_PATIENT_DATA,
    Capability.VIEW_PATIENT_CONSENTS,
})


def capabilities_for(role: Role) -> frozenset[Capability]:
    """Return the capability set for a role."""
    match role:
        case Role.PATIENT:
            return frozenset({
                Capability.MANAGE_OWN_CONSENT,
                Capability.VIEW_PATIENT_CONSENTS,
                Capability.VIEW_AUDIT_TRAIL,
            })
        case Role.DOCTOR | Role.NURSE:
            return _CLINICAL | {Capability.EMERGENCY_OVERRIDE}
        case Role.RECEPTIONIST | Role.LAB_TECHNICIAN | Role.PHARMACIST:
            return _CLINICAL
        case Role.ADMINISTRATOR:
            return frozenset(Capability)
        case _:
            raise ValueError(f"No capability set defined for role {role!r}")


def has_capability(role: Role, capability: Capability) -> bool:
    return capability in capabilities_for(role)


def require_capability(
    role: Role,
    capability: Capability,
    message: str,
    code: str,
) -> None:
    """Raise Forbidden unless the role holds the capability."""
    if not has_capability(role, capability):
        raise Forbidden(message, code=code)
