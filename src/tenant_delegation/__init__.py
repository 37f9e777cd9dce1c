"""
Tenant Delegation - permission delegation engine for multi-tenant systems

Lets one tenant member temporarily grant a subset of their permissions (or
role) to another member, with optional approval, emergency flagging,
automatic expiry and a full audit trail.

Fun fact: Most "temporary" access grants in the wild are never taken back -
here every grant carries a hard expiry from the moment it is requested.
"""

from tenant_delegation.engine import DelegationEngine

__version__ = "0.1.0"
__all__ = ["DelegationEngine", "__version__"]
