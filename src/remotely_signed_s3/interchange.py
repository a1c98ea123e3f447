"""
Interchange request validation.

The interchange format ``{url, method, headers}`` is how a trusted signer
hands a pre-signed request to an untrusted worker. Requests are validated
here at the runner boundary, and whole batches are validated before any of
them is executed.
"""
from __future__ import annotations

from typing import Any, Iterable, List, Mapping, Union

from .errors import ValidationError
from .models import InterchangeRequest, parse_model

__all__ = ["validate", "validate_all"]

RequestLike = Union[InterchangeRequest, Mapping[str, Any]]


def validate(request: RequestLike) -> InterchangeRequest:
    """
    Validate one interchange request.

    Args:
        request: An InterchangeRequest or a mapping with url, method and headers

    Returns:
        The validated, immutable InterchangeRequest

    Raises:
        ValidationError: If the shape or any value is invalid; ``field``
            names the offending field (``url``, ``method``, ``headers`` or
            ``headers.<name>``)
    """
    if not isinstance(request, (InterchangeRequest, Mapping)):
        raise ValidationError(
            f"Interchange request must be a mapping, got {type(request).__name__}"
        )
    return parse_model(InterchangeRequest, request)


def validate_all(requests: Union[RequestLike, Iterable[RequestLike]]) -> List[InterchangeRequest]:
    """
    Validate a single request or a batch, failing before any is executed.

    Raises:
        ValidationError: On the first invalid request; the message carries
            its position in the batch
    """
    if isinstance(requests, (InterchangeRequest, Mapping)):
        return [validate(requests)]

    validated = []
    for index, request in enumerate(requests):
        try:
            validated.append(validate(request))
        except ValidationError as e:
            raise ValidationError(f"Request {index}: {e}", field=e.field) from e
    return validated
