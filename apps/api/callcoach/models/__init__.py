"""Expose ORM models."""
from .call import Call, CallStatus, ProcessingStep, StepStatus

__all__ = [
    "Call",
    "CallStatus",
    "ProcessingStep",
    "StepStatus",
]
