"""
Kernel - Cross-cutting infrastructure for the delegation engine

Errors, clock, ids, logging, metrics, retries and policy. Nothing in here
knows what a delegation is.
"""

from tenant_delegation.kernel.errors import (
    DelegationEngineError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    RepositoryError,
)
from tenant_delegation.kernel.ids import IdFactory, generate_id
from tenant_delegation.kernel.policy import DelegationPolicy
from tenant_delegation.kernel.time import RealTimeProvider, TestTimeProvider, TimeProvider

__all__ = [
    # IDs
    "IdFactory",
    "generate_id",
    # Time
    "TimeProvider",
    "RealTimeProvider",
    "TestTimeProvider",
    # Policy
    "DelegationPolicy",
    # Errors
    "DelegationEngineError",
    "NotFoundError",
    "InvalidStateError",
    "ForbiddenError",
    "RepositoryError",
]
