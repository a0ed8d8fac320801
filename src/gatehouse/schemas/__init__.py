"""
Pydantic schemas for API request/response models.

These schemas define the structure of API data for serialization and validation.
"""

from .challenge import (
    ChallengePayloadOut,
    ChallengeRequestResponse,
    ChallengeSessionDetail,
    ChallengeStatsResponse,
    ResourceLoadedRequest,
    VerifyChallengeRequest,
    VerifyResourcesRequest,
)
from .session import SessionLinkResponse, SessionRegisterResponse, SessionStatusResponse

__all__ = [
    "ChallengePayloadOut", "ChallengeRequestResponse", "ChallengeSessionDetail",
    "ChallengeStatsResponse", "ResourceLoadedRequest",
    "VerifyChallengeRequest", "VerifyResourcesRequest",
    "SessionLinkResponse", "SessionRegisterResponse", "SessionStatusResponse",
]
