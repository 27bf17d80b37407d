"""Requester identity carried through a chat turn."""

from __future__ import annotations

from pydantic import BaseModel, Field

from .classifier import SecurityLevel


class RequesterContext(BaseModel):
    """Who is asking, on behalf of which organisation, with what clearance.

    Produced by the identity provider for every inbound message and consumed by
    retrieval to scope organisation-private content.
    """

    requester_id: str = Field(..., description="Authenticated user id")
    org_id: str = Field(..., description="Organisation the user acts for")
    clearance: SecurityLevel = Field(
        default=SecurityLevel.INTERNAL, description="Highest visible security level"
    )
