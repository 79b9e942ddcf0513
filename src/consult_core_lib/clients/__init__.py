"""HTTP clients for backing services."""

from consult_core_lib.clients.base import BaseServiceClient
from consult_core_lib.clients.postgrest_store import PostgrestRecordStore

__all__ = [
    "BaseServiceClient",
    "PostgrestRecordStore",
]
