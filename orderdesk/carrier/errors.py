from __future__ import annotations


class CarrierError(RuntimeError):
    transient = False


class CarrierConfigurationError(CarrierError):
    pass


class CarrierUnavailableError(CarrierError):
    """Server-class failures or transport errors on every attempt."""

    transient = True

    def __init__(self, attempts: int, last_status: int | None = None, detail: str = ""):
        reason = f"HTTP {last_status}" if last_status else (detail or "transport error")
        super().__init__(f"carrier unavailable after {attempts} attempt(s): {reason}")
        self.attempts = attempts
        self.last_status = last_status
        self.detail = detail


class CarrierClientError(CarrierError):
    def __init__(self, status: int, preview: str = ""):
        super().__init__(f"carrier rejected request: HTTP {status} {preview}".rstrip())
        self.status = status
        self.preview = preview


class CarrierFaultError(CarrierError):
    """HTTP 200 carrying a business-level fault envelope."""

    def __init__(self, fault: str | None = None, detail: str | None = None):
        message = "carrier fault"
        if fault:
            message += f": {fault}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)
        self.fault = fault
        self.detail = detail


class UnrecognizedLabelResponse(CarrierError):
    def __init__(self, status: int, content_type: str, preview: str):
        super().__init__(
            f"unrecognized carrier response: status={status} content_type={content_type or '-'} body={preview!r}"
        )
        self.status = status
        self.content_type = content_type
        self.preview = preview
