from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Deque

from crmbridge.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SoftFailure:
    # A non-fatal error from a best-effort step; reported, never swallowed.
    stage: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    error_type: str | None = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


_recent_failures: Deque[SoftFailure] = deque(maxlen=1000)


def report_soft_failure(
    stage: str,
    error: BaseException | str,
    **context: Any,
) -> SoftFailure:
    """Log, count and retain a soft failure, returning it for the caller's result."""
    if isinstance(error, BaseException):
        message = str(error) or error.__class__.__name__
        error_type = error.__class__.__name__
    else:
        message = error
        error_type = None
    failure = SoftFailure(stage=stage, message=message, context=dict(context), error_type=error_type)
    _recent_failures.append(failure)
    increment_counter(f"soft_failures_total.{stage}")
    logger.warning(
        "soft_failure stage=%s error_type=%s message=%s context=%s",
        stage,
        error_type,
        message,
        context,
    )
    return failure


def recent_soft_failures(stage: str | None = None) -> list[SoftFailure]:
    if stage is None:
        return list(_recent_failures)
    return [failure for failure in _recent_failures if failure.stage == stage]


def clear_soft_failures() -> None:
    _recent_failures.clear()
