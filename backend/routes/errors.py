"""Error-code to HTTP status mapping shared by the route modules."""

STATUS_BY_CODE: dict[str, int] = {
    "validation_error": 400,
    "insufficient_balance": 402,
    "turn_in_progress": 409,
    "provider_failure": 502,
    "invalid_response": 502,
    "brain_failure": 502,
    "persistence_failure": 500,
    "configuration_error": 503,
}


def status_for(code: str | None) -> int:
    return STATUS_BY_CODE.get(code or "", 500)
