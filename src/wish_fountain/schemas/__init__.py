"""
Pydantic schemas for API request/response models.

Field names follow the JSON wire format the fountain client already speaks.
"""

from .fountain import (
    ClearRequest,
    ResolveRequest,
    StartRequest,
    StartResponse,
    VerifyRequest,
    VerifyResponse,
)

__all__ = [
    "ClearRequest",
    "ResolveRequest",
    "StartRequest", "StartResponse",
    "VerifyRequest", "VerifyResponse",
]
