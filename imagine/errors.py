from __future__ import annotations

from typing import Dict, List, Optional


DEAD_API = "API is not running"


class ImagineError(Exception):
    """Base class for every error the queue reports to a user."""


class ValidationError(ImagineError):
    """Request rejected locally; never reaches the backend."""


class DirectiveError(ValidationError):
    """A recognized prompt directive carried a malformed value."""

    def __init__(self, key: str, value: str, reason: str = "invalid value"):
        self.key = key
        self.value = value
        super().__init__(f"--{key} {value}: {reason}")


class BackendUnreachable(ImagineError):
    def __init__(self, message: str = DEAD_API):
        super().__init__(message)


class BackendError(ImagineError):
    """Non-success response from the rendering backend."""

    def __init__(self, status_code: int, body: str = "", reason: str = ""):
        self.status_code = status_code
        self.body = body or ""
        status = f"{status_code} {reason}".strip()
        detail = f"\n```json\n{self.body}\n```" if self.body else " (unknown error)"
        super().__init__(f"unexpected status code: `{status}`{detail}")


class CapacityExceeded(ImagineError):
    def __init__(self, capacity: int):
        self.capacity = capacity
        super().__init__(f"queue is full ({capacity} pending jobs), try again later")


class NoActiveJob(ImagineError):
    def __init__(self):
        super().__init__("there is no generation currently in progress")


class ProtocolViolation(ImagineError):
    """Queue invariant broken; fatal to the job involved, never to the poll loop."""


class GenerationTimeout(ImagineError):
    def __init__(self, timeout_s: float):
        self.timeout_s = timeout_s
        super().__init__("Timeout reached")


def _contains_any(message: str, needles: List[str]) -> bool:
    lowered = message.lower()
    return any(needle.lower() in lowered for needle in needles)


def classify_backend_error(msg: Optional[str]) -> Dict[str, object]:
    """Classify backend error bodies for user-facing display + remediation guidance."""
    message = msg or ""
    if _contains_any(message, [DEAD_API, "connection refused", "connecterror"]):
        return {
            "category": "backend_unreachable",
            "short": "The rendering backend is not reachable.",
            "action": ["Check that the backend is running with --api and retry."],
        }
    if _contains_any(message, ["cuda out of memory", "outofmemoryerror"]):
        return {
            "category": "oom",
            "short": "The backend ran out of GPU memory.",
            "action": [
                "Reduce resolution, hires.fix zoom, or batch size.",
                "Retry once the current workload finishes.",
            ],
        }
    if _contains_any(message, ["not found in the list", "checkpoint not found", "could not find checkpoint"]):
        return {
            "category": "missing_model",
            "short": "Requested model is not available on the backend.",
            "action": ["Refresh the model list and pick one of the listed names."],
        }
    if _contains_any(message, ["interrupted"]):
        return {
            "category": "interrupted",
            "short": "Generation was interrupted.",
            "action": [],
        }
    return {
        "category": "unknown",
        "short": "Backend error.",
        "action": ["Check the service logs for the full response body."],
    }


class ModelSwitchError(ImagineError):
    """Switching models failed part-way; ``original`` is what to restore."""

    def __init__(self, original, cause: Exception):
        self.original = original
        self.cause = cause
        super().__init__(f"error switching models: {cause}")
