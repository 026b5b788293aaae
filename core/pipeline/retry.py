"""Retry policy for pipeline stages."""

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RetryPolicy(BaseModel):
    """Bounded retries with an increasing backoff schedule.

    Only errors flagged ``retryable`` are retried. The delay before retry
    ``n`` is ``backoff[n - 1]``; the last entry repeats when the schedule is
    shorter than the number of retries.

    Attributes:
        max_attempts: Total attempts of a stage, including the first.
        backoff: Delays in seconds before each retry.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(3, ge=1, description="Attempts per stage")
    backoff: tuple[float, ...] = Field((5.0, 30.0, 60.0), description="Retry delays in seconds")

    @field_validator("backoff")
    @classmethod
    def _non_decreasing(cls, value: tuple[float, ...]) -> tuple[float, ...]:
        if any(delay < 0 for delay in value):
            raise ValueError("backoff delays must not be negative")
        if any(later < earlier for earlier, later in zip(value, value[1:])):
            raise ValueError("backoff delays must not decrease")
        return value

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """Decide whether to retry after ``attempt`` failed with ``error``."""
        return attempt < self.max_attempts and bool(getattr(error, "retryable", False))

    def delay_for(self, attempt: int) -> float:
        """Delay before the retry that follows failed attempt ``attempt``."""
        if not self.backoff:
            return 0.0
        return self.backoff[min(attempt, len(self.backoff)) - 1]
