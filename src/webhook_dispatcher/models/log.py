"""Delivery log entry written once per request at its terminal transition."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from .outcome import Delivered

if TYPE_CHECKING:
    from .message import DeliveryRequest
    from .outcome import AttemptOutcome


class DeliveryLogEntry(BaseModel):
    """Row appended to the delivery log store.

    Attributes:
        success: True iff the webhook was delivered.
        error: Failure reason, None on success.
        team_id: Owning tenant.
        crawl_id: Job the event belongs to.
        scrape_id: Optional sub-job.
        url: Receiver URL.
        status_code: Last HTTP status, None on connection-level failures.
        event: Event name.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    success: bool = Field(description="Whether the webhook was delivered")
    error: str | None = Field(default=None, description="Failure reason")
    team_id: str = Field(description="Owning tenant")
    crawl_id: str = Field(description="Job the event belongs to")
    scrape_id: str | None = Field(default=None, description="Optional sub-job")
    url: str = Field(description="Receiver URL")
    status_code: int | None = Field(default=None, description="Last HTTP status")
    event: str = Field(description="Event name")

    @classmethod
    def for_outcome(
        cls,
        request: DeliveryRequest,
        outcome: AttemptOutcome,
    ) -> DeliveryLogEntry:
        """Create the entry for a request's terminal outcome."""
        return cls(
            success=isinstance(outcome, Delivered),
            error=None if isinstance(outcome, Delivered) else outcome.reason,
            team_id=request.team_id,
            crawl_id=request.job_id,
            scrape_id=request.scrape_id,
            url=request.webhook_url,
            status_code=outcome.status_code,
            event=request.event,
        )


__all__ = ["DeliveryLogEntry"]
