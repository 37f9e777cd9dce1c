"""
Delegation Policy - tunable parameters of the engine

Paging bounds, sweep cadence and notification behaviour live here so a host
can adjust them without touching service code.
"""

from pydantic import BaseModel, Field, model_validator


class DelegationPolicy(BaseModel):
    """
    Engine configuration

    Attributes:
        policy_version: Version tag for tracking configuration changes
        default_page_size: Page size when a query does not ask for one
        max_page_size: Upper cap applied to any requested page size
        sweep_interval_hours: Cadence the host should run the sweep at
        sweep_batch_size: Overdue delegations read per page; a pass reads pages until none remain
        notify_on_expiry: Whether the sweeper queues "expired" notifications
    """

    policy_version: str = Field(
        default="1.0",
        description="Policy version for tracking changes over time",
    )

    default_page_size: int = Field(
        default=10,
        ge=1,
        description="Page size used when a query does not specify one",
    )

    max_page_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Hard cap on query page size",
    )

    sweep_interval_hours: int = Field(
        default=1,
        ge=1,
        le=24,
        description="How often the host is expected to run the expiration sweep",
    )

    sweep_batch_size: int = Field(
        default=500,
        ge=1,
        description="Overdue delegations loaded per page while a sweep pass walks the backlog",
    )

    notify_on_expiry: bool = Field(
        default=True,
        description="Queue an 'expired' notification for every swept delegation",
    )

    @model_validator(mode="after")
    def _default_within_cap(self) -> "DelegationPolicy":
        if self.default_page_size > self.max_page_size:
            raise ValueError(
                f"default_page_size ({self.default_page_size}) must not exceed "
                f"max_page_size ({self.max_page_size})"
            )
        return self

    def clamp_limit(self, limit: int | None) -> int:
        """Page size to use for a requested limit"""
        if limit is None:
            return self.default_page_size
        return max(1, min(limit, self.max_page_size))
