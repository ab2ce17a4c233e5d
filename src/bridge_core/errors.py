from __future__ import annotations


class TypedBridgeError(RuntimeError):
    """Base class for typed operational errors surfaced to users."""

    error_code = "INTERNAL_ERROR"
    failure_class = "internal"
    user_message = "An internal error occurred."

    def metadata(self) -> dict[str, str]:
        return {
            "error_code": self.error_code,
            "failure_class": self.failure_class,
            "user_message": self.user_message,
        }

    def payload(self, *, detail: str | None = None) -> dict[str, str]:
        payload = self.metadata()
        payload["detail"] = str(self) if detail is None else str(detail)
        return payload


def typed_error_metadata(exc: BaseException) -> dict[str, str] | None:
    if isinstance(exc, TypedBridgeError):
        return exc.metadata()
    return None


def typed_error_payload(exc: BaseException) -> dict[str, str] | None:
    if isinstance(exc, TypedBridgeError):
        return exc.payload()
    return None


def error_message(exc: BaseException) -> str:
    text = str(exc)
    return text if text else exc.__class__.__name__


class ConfigError(TypedBridgeError):
    """Configuration parsing or validation error."""

    error_code = "CONFIG_ERROR"
    failure_class = "configuration"
    user_message = "Configuration is invalid."


class AdmissionRejected(TypedBridgeError):
    """Inbound message was refused before it reached a conversation queue."""

    error_code = "ADMISSION_REJECTED"
    failure_class = "admission"
    user_message = "The message was not accepted."

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason

    def payload(self, *, detail: str | None = None) -> dict[str, str]:
        payload = super().payload(detail=detail)
        payload["reason"] = self.reason
        return payload


class InvocationFailed(TypedBridgeError):
    """Agent backend call raised or streamed an error."""

    error_code = "INVOCATION_FAILED"
    failure_class = "agent_backend"
    user_message = "The agent backend failed to answer."


class PersistenceFailed(TypedBridgeError):
    """Session, registry or audit state could not be written."""

    error_code = "PERSISTENCE_FAILED"
    failure_class = "persistence"
    user_message = "Bridge state could not be saved."


class ProcessLockError(TypedBridgeError):
    """Another live process owns the transport session."""

    error_code = "PROCESS_LOCK_HELD"
    failure_class = "exclusivity"
    user_message = "Another bridge instance is already running."

    def __init__(self, message: str, *, pid: int) -> None:
        super().__init__(message)
        self.pid = pid
