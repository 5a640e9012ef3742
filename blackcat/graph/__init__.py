from .client import ApiClient
from .models import BatchResponse, CachePolicy, ListRequest, LogicalRequest

__all__ = [
    "ApiClient",
    "BatchResponse",
    "CachePolicy",
    "ListRequest",
    "LogicalRequest",
]
