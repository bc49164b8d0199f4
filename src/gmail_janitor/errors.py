"""Exceptions raised by the cleanup automation layer."""

from __future__ import annotations


class CleanupError(Exception):
    """Base class for cleanup automation errors."""


class PolicyNotFoundError(CleanupError):
    def __init__(self, policy_id: str) -> None:
        super().__init__(f"Policy not found: {policy_id}")
        self.policy_id = policy_id


class PolicyDisabledError(CleanupError):
    def __init__(self, policy_id: str) -> None:
        super().__init__(f"Policy is disabled: {policy_id}")
        self.policy_id = policy_id


class PolicyValidationError(CleanupError):
    """Raised when a policy fails validation; ``errors`` lists every problem."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("Invalid policy: " + "; ".join(errors))
        self.errors = errors


class JobNotFoundError(CleanupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobStateError(CleanupError):
    """Raised on an illegal job status transition or a write to a finished job."""


class JobPersistenceError(CleanupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Failed to persist cleanup job: {job_id}")
        self.job_id = job_id
