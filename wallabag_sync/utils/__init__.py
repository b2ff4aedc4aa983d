"""Shared utilities for configuration, logging, and error handling"""

from wallabag_sync.utils.retry import backoff_delay, retry_call

__all__ = ["backoff_delay", "retry_call"]
