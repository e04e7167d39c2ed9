"""
analytics/errors.py

Error taxonomy for the analytics core.

  AnalyticsError
  ├── RepositoryError        storage layer unreachable / erroring
  ├── InsufficientDataError  zero-length input where a result is mandatory
  └── TargetResolutionError  no goal layer and no profile to compute from
"""


class AnalyticsError(Exception):
    """Base class for every error raised by the analytics core."""


class RepositoryError(AnalyticsError):
    pass


class InsufficientDataError(AnalyticsError, ValueError):
    pass


class TargetResolutionError(AnalyticsError, LookupError):
    def __init__(self, user_id: str, message: str) -> None:
        super().__init__(f"Cannot resolve targets for user {user_id}: {message}")
        self.user_id = user_id
