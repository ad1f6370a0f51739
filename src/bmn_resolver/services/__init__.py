"""Resolver services: event coordination, action scanning, submission."""

from bmn_resolver.services.coordinator import CoordinationEngine
from bmn_resolver.services.scanner import ActionScanner
from bmn_resolver.services.submitter import (
    DryRunSubmitter,
    ErrorClassification,
    SubmissionError,
    SubmissionErrorType,
    SubmissionResult,
    TransactionSubmitter,
    classify_submission_error,
)

__all__ = [
    "ActionScanner",
    "CoordinationEngine",
    "DryRunSubmitter",
    "ErrorClassification",
    "SubmissionError",
    "SubmissionErrorType",
    "SubmissionResult",
    "TransactionSubmitter",
    "classify_submission_error",
]
