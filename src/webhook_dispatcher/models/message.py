"""Queue message models.

A queue message carries everything needed to deliver one webhook: the
target URL, the JSON payload to POST, caller-supplied headers, tenant and
job identifiers for the delivery log, and the per-attempt timeout.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Optional payload keys that are left out of the POST body when unset
_OMIT_IF_NONE = ("id", "jobId", "error", "metadata")


class WebhookPayload(BaseModel):
    """Body POSTed to the receiver.

    Wire names are camelCase (``type``, ``webhookId``, ``jobId``).

    Attributes:
        success: Whether the job that triggered this event succeeded.
        event_type: Event type, sent as ``type``.
        webhook_id: Identifier of the webhook subscription.
        id: Optional identifier of the job or sub-job.
        job_id: Optional parent job identifier.
        data: Event data, a list of arbitrary JSON values.
        error: Optional job error message.
        metadata: Optional caller metadata echoed back to the receiver.
    """

    model_config = ConfigDict(strict=True, populate_by_name=True, extra="ignore")

    success: bool = Field(description="Whether the job succeeded")
    event_type: str = Field(alias="type", description="Event type")
    webhook_id: str = Field(alias="webhookId", description="Webhook subscription ID")
    id: str | None = Field(default=None, description="Job or sub-job ID")
    job_id: str | None = Field(default=None, alias="jobId", description="Parent job ID")
    data: list[Any] = Field(description="Event data")
    error: str | None = Field(default=None, description="Job error message")
    metadata: dict[str, str] | None = Field(default=None, description="Caller metadata")

    def to_body(self) -> dict[str, Any]:
        """Serialize to the JSON body sent to the receiver.

        Unset optional keys are omitted rather than sent as null.
        """
        body = self.model_dump(mode="json", by_alias=True)
        return {
            key: value
            for key, value in body.items()
            if not (key in _OMIT_IF_NONE and value is None)
        }


class DeliveryRequest(BaseModel):
    """A decoded webhook delivery request.

    ``retry_count`` is the number of failed attempts already made. Only
    the dispatch loop changes it, between attempts.

    Attributes:
        webhook_url: Receiver URL.
        payload: Body to POST.
        headers: Extra request headers.
        team_id: Owning tenant.
        job_id: Job the event belongs to.
        scrape_id: Optional sub-job.
        event: Event name recorded in the delivery log.
        timeout_ms: Upper bound on each attempt.
        retry_count: Failed attempts so far.
    """

    model_config = ConfigDict(strict=True, extra="ignore", validate_assignment=True)

    webhook_url: str = Field(min_length=1, description="Receiver URL")
    payload: WebhookPayload = Field(description="Body to POST")
    headers: dict[str, str] = Field(description="Extra request headers")
    team_id: str = Field(description="Owning tenant")
    job_id: str = Field(description="Job the event belongs to")
    scrape_id: str | None = Field(default=None, description="Optional sub-job")
    event: str = Field(description="Event name")
    timeout_ms: int = Field(gt=0, description="Per-attempt timeout in milliseconds")
    retry_count: int = Field(default=0, ge=0, description="Failed attempts so far")

    @field_validator("headers")
    @classmethod
    def _ascii_headers(cls, value: dict[str, str]) -> dict[str, str]:
        # HTTP/1.1 header fields are encoded as ASCII on the wire
        for name, header_value in value.items():
            if not name.isascii() or not header_value.isascii():
                raise ValueError(f"header {name!r} must contain only ASCII characters")
        return value

    @property
    def timeout_seconds(self) -> float:
        """Per-attempt timeout in seconds."""
        return self.timeout_ms / 1000


__all__ = ["DeliveryRequest", "WebhookPayload"]
