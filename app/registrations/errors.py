"""Error taxonomy for the registration workflow.

Input-class errors subclass ``ValueError`` so adapters can treat them as
user-correctable; infrastructure errors do not.
"""
from __future__ import annotations


class RegistrationError(Exception):
    code = "registration-error"
    status_code = 400
    retryable = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict[str, object]:
        return {"error": self.code, "message": self.message, "retryable": self.retryable}


class GuardFailed(RegistrationError, ValueError):
    code = "guard-failed"
    status_code = 409

    def __init__(self, reason: str, detail: str | None = None) -> None:
        self.reason = reason
        self.detail = detail
        message = f"{reason}: {detail}" if detail else reason
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload["reason"] = self.reason
        if self.detail:
            payload["detail"] = self.detail
        return payload


class SlotLocked(GuardFailed):
    code = "slot-locked"
    status_code = 423

    def __init__(self, case_id: str) -> None:
        self.case_id = case_id
        super().__init__("registration-completed", f"registration {case_id} is completed")


class UnauthorizedAction(RegistrationError, ValueError):
    code = "unauthorized-action"
    status_code = 403

    def __init__(self, action: str, role: str) -> None:
        self.action = action
        self.role = role
        super().__init__(f"role {role} may not perform {action}")


class InvalidSlot(RegistrationError, ValueError):
    code = "invalid-slot"
    status_code = 400

    def __init__(self, slot: str) -> None:
        self.slot = slot
        super().__init__(f"unknown document slot {slot!r}")

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload["slot"] = self.slot
        return payload


class IncompleteSet(RegistrationError, ValueError):
    code = "incomplete-set"
    status_code = 422

    def __init__(self, slot: str) -> None:
        self.slot = slot
        super().__init__(f"required document slot {slot} is empty")

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload["slot"] = self.slot
        return payload


class FileRejected(RegistrationError, ValueError):
    code = "file-rejected"
    status_code = 400


class StaleWrite(RegistrationError):
    code = "stale-write"
    status_code = 409
    retryable = True

    def __init__(self, case_id: str, expected_version: int) -> None:
        self.case_id = case_id
        self.expected_version = expected_version
        super().__init__(f"registration {case_id} changed since version {expected_version}")


class RegistrationNotFound(RegistrationError, LookupError):
    code = "not-found"
    status_code = 404

    def __init__(self, case_id: str) -> None:
        self.case_id = case_id
        super().__init__(f"registration {case_id} not found")


class PackageNotFound(RegistrationError, LookupError):
    code = "not-found"
    status_code = 404

    def __init__(self, package_id: str) -> None:
        self.package_id = package_id
        super().__init__(f"package {package_id} not found")


class UpstreamError(RegistrationError):
    code = "upstream-error"
    status_code = 502
    retryable = True


class UpstreamTimeout(UpstreamError):
    code = "upstream-timeout"
    status_code = 504
