"""Remote feature service access."""

from .base import AttachmentInfo, RemoteFeatureClient
from .client import FeatureServiceClient, FeatureServiceConfig
from .filters import FieldFilter, FilterGroup, filter_from_dict, to_where

__all__ = [
    "AttachmentInfo",
    "RemoteFeatureClient",
    "FeatureServiceClient",
    "FeatureServiceConfig",
    "FieldFilter",
    "FilterGroup",
    "filter_from_dict",
    "to_where",
]
