from typing import Optional


class InferenceError(RuntimeError):
    kind = "error"
    http_status = 500

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        kind: Optional[str] = None,
        field: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        if kind:
            self.kind = kind
        self.field = field

    def to_dict(self) -> dict:
        data = {"detail": self.message, "error": type(self).__name__, "kind": self.kind}
        if self.status_code is not None:
            data["status_code"] = self.status_code
        if self.field:
            data["field"] = self.field
        return data


class EngineUnavailableError(InferenceError):
    kind = "network"
    http_status = 503


class ModelNotFoundError(InferenceError):
    kind = "model"
    http_status = 404


class AuthError(InferenceError):
    kind = "http"
    http_status = 401


class BadRequestError(InferenceError):
    kind = "http"
    http_status = 400


class TransientBackendError(InferenceError):
    kind = "network"
    http_status = 502


class DiskSpaceError(InferenceError):
    kind = "disk"
    http_status = 507


class ParseError(InferenceError):
    kind = "parse"
    http_status = 502


class NotFoundError(InferenceError):
    kind = "not_found"
    http_status = 404


class FallbackFailedError(InferenceError):
    http_status = 502

    def __init__(self, remote_error: BaseException, local_error: BaseException) -> None:
        super().__init__(
            "Both remote and local inference failed. "
            f"Remote: {remote_error}. Local: {local_error}. Please check your configuration.",
            kind="fallback",
        )
        self.remote_error = remote_error
        self.local_error = local_error


def error_from_status(status_code: int, detail: str) -> InferenceError:
    """Map an HTTP status from the hosted API onto the error taxonomy."""
    if status_code in (401, 403):
        return AuthError(
            f"Remote API rejected the credentials (HTTP {status_code}): {detail}. "
            "Check remoteConfig.apiKey.",
            status_code=status_code,
            field="remoteConfig.apiKey",
        )
    if status_code == 400:
        return BadRequestError(
            f"Remote API bad request (HTTP 400): {detail}. Check remoteConfig.defaultModel.",
            status_code=status_code,
            field="remoteConfig.defaultModel",
        )
    if status_code == 404:
        return ModelNotFoundError(f"Remote API resource not found (HTTP 404): {detail}", status_code=status_code)
    return TransientBackendError(f"Remote API error (HTTP {status_code}): {detail}", status_code=status_code, kind="http")
