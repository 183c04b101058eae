# /driftly/exceptions.py

from typing import Any, Dict, Optional

# Exceptions raised by the flow engine. Per-contact failures are converted into
# a contact state at the processing boundary; the rest surface to callers.


class FlowEngineError(Exception):
    """Base class for every error raised by the flow engine."""


class DeliveryFailure(FlowEngineError):
    def __init__(self, message: str, status_code: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details or {}


class PermanentDeliveryFailure(DeliveryFailure):
    """The recipient can never receive mail (hard bounce, invalid address)."""


class TransientDeliveryFailure(DeliveryFailure):
    """Delivery failed for a reason that may go away (timeouts, 5xx, throttling)."""


class WebhookFailure(FlowEngineError):
    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ConditionEvaluationFailure(FlowEngineError):
    pass


class MissingStepFailure(FlowEngineError):
    pass


class FlowValidationError(FlowEngineError):
    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.error_code = error_code


class FlowNotFound(FlowEngineError):
    pass


class ContactNotFound(FlowEngineError):
    pass


class ContactNotInErrorState(FlowEngineError):
    pass


class ActionFailure(FlowEngineError):
    """An action step could not be performed."""
