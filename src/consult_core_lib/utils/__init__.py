"""Utility Functions"""

from consult_core_lib.utils.resilience import (
    service_startup_retry,
    create_custom_retry,
    store_retry,
)

__all__ = [
    "service_startup_retry",
    "create_custom_retry",
    "store_retry",
]
