"""
Retry and error handling policy
"""
import logging
import random
from typing import Any, Dict, Optional

from ..exceptions import (
    MissingVariableError, StepTimeoutError, SuspensionTimeoutError,
    WorkflowValidationError, error_to_dict
)
from ..models.workflow import BackoffStrategy, ErrorHandlingMode, RetryPolicy, Step


logger = logging.getLogger(__name__)

# Never retried unless the policy's ``retryable`` predicate explicitly allows it
NON_RETRYABLE = (
    MissingVariableError,
    SuspensionTimeoutError,
    StepTimeoutError,
    WorkflowValidationError,
)


class ErrorHandler:
    """Decides between retrying a step and applying its error handling mode"""

    def should_retry(self, error: BaseException, policy: RetryPolicy, attempt: int) -> bool:
        """Whether attempt number ``attempt`` may be followed by another"""
        if attempt >= policy.max_attempts:
            return False

        if policy.retryable is not None:
            return bool(policy.retryable(error))

        if isinstance(error, NON_RETRYABLE):
            return False

        return isinstance(error, policy.retry_on)

    def calculate_retry_delay(self, attempt: int, policy: RetryPolicy) -> float:
        """Delay before the retry that follows attempt number ``attempt``"""
        if policy.backoff == BackoffStrategy.CONSTANT:
            delay = policy.delay
        elif policy.backoff == BackoffStrategy.LINEAR:
            delay = policy.delay * attempt
        else:  # exponential
            delay = policy.delay * (policy.factor ** (attempt - 1))

        delay = min(delay, policy.max_delay)

        if policy.jitter and delay > 0:
            delay += random.uniform(0, delay * 0.1)

        return delay

    def next_delay(self, step: Step, error: BaseException, attempt: int) -> Optional[float]:
        """Retry delay in seconds, or None once the step has failed for good"""
        policy = step.retry_policy
        if policy is None or not self.should_retry(error, policy, attempt):
            return None

        delay = self.calculate_retry_delay(attempt, policy)
        logger.warning(
            f"Step {step.id} attempt {attempt}/{policy.max_attempts} failed: {error}; "
            f"retrying in {delay:.3f}s"
        )
        return delay

    def handle_failure(self, step: Step, error: BaseException, attempts: int) -> Dict[str, Any]:
        """Log a final failure according to the step's mode and return its summary"""
        summary = error_to_dict(error)
        summary["step_id"] = step.id
        summary["attempts"] = attempts

        if step.error_handling == ErrorHandlingMode.IGNORE_ERROR:
            logger.warning(f"Ignoring failure of step {step.id}: {error}")
        elif step.error_handling == ErrorHandlingMode.CONTINUE_ON_ERROR:
            logger.error(f"Step {step.id} failed, continuing: {error}", exc_info=error)
        else:
            logger.error(f"Step {step.id} failed, aborting run: {error}", exc_info=error)

        return summary

    def is_fatal(self, step: Step) -> bool:
        return step.error_handling == ErrorHandlingMode.FAIL_WORKFLOW

    def is_reported(self, step: Step) -> bool:
        """Whether the failure is listed in WorkflowResult.errors"""
        return step.error_handling == ErrorHandlingMode.CONTINUE_ON_ERROR
