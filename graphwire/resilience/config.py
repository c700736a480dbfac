from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class RetryConfig(BaseModel):
    """Retry policy for transactional units of work.

    Exponential backoff with full jitter; retries stop once the elapsed time
    since the first attempt exceeds `max_retry_time`.
    See: https://aws.amazon.com/blogs/architecture/exponential-backoff-and-jitter/
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_retry_time: float = Field(default=30.0, ge=0, description="Total time budget for retries (s)")
    wait_min: float = Field(default=1.0, ge=0, description="Minimum wait between attempts (s)")
    wait_max: float = Field(default=30.0, ge=0, description="Maximum wait between attempts (s)")
    multiplier: float = Field(default=1.0, ge=0, description="Wait multiplier (tenacity default: 1.0)")
    exp_base: float = Field(default=2.0, ge=1, description="Exponential base")
    acquisition_timeout: float | None = Field(
        default=None, gt=0, description="Override of the pool acquire deadline per attempt (s)"
    )
