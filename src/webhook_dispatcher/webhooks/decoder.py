"""Decode raw queue messages into delivery requests."""

from __future__ import annotations

import json

from pydantic import ValidationError

from webhook_dispatcher.exceptions import MalformedMessage
from webhook_dispatcher.models import DeliveryRequest


def _field_path(loc: tuple[int | str, ...]) -> str:
    return ".".join(str(part) for part in loc) or "<body>"


def decode_message(body: bytes) -> DeliveryRequest:
    """Parse a queue message body.

    The body must be a UTF-8 JSON object carrying the receiver URL, the
    payload, headers, tenant/job identifiers, the event name and a
    positive ``timeout_ms``. ``retry_count`` defaults to 0. Types are
    checked strictly: ``"5000"`` is not a valid ``timeout_ms``.

    Args:
        body: Raw message bytes.

    Returns:
        The decoded DeliveryRequest.

    Raises:
        MalformedMessage: If the body is not a JSON object, a required
            field is missing, or a field has the wrong type.
    """
    try:
        return DeliveryRequest.model_validate_json(body)
    except ValidationError as e:
        errors = e.errors()
        fields = sorted({_field_path(err["loc"]) for err in errors})
        details = "; ".join(f"{_field_path(err['loc'])}: {err['msg']}" for err in errors)
        raise MalformedMessage(f"Invalid delivery request: {details}", fields=fields) from e


def with_retry_count(body: bytes, retry_count: int) -> bytes:
    """Rewrite a decoded message body with a new ``retry_count``.

    Every other field, including ones the decoder ignores, is kept as is.

    Args:
        body: Raw body of a message that ``decode_message`` accepted.
        retry_count: Failed attempts made so far.

    Returns:
        The re-encoded body.
    """
    document = json.loads(body)
    document["retry_count"] = retry_count
    return json.dumps(document).encode()
