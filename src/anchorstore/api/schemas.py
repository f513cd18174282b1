from __future__ import annotations

"""Pydantic request schemas for the HTTP API.

These exist only for HTTP input validation; the canonical operation shape is
anchorstore.ledger.types.Operation.
"""

from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field


class OperationModel(BaseModel):
    op_type: str = Field(..., description="REGISTER_RESOURCE | SET_RESOURCE_URI | GIVE_FEEDBACK")
    sender: str = Field(..., description="Account submitting the operation")
    payload: Dict[str, Any] = Field(default_factory=dict)
    auth: Optional[Union[str, Dict[str, Any]]] = Field(default=None, description="Encoded or JSON authorization token")


class PublishRequest(BaseModel):
    document: Dict[str, Any] = Field(..., description="JSON document to store")
    operation: OperationModel
    data_type: Optional[str] = Field(default=None, description="Data-Type tag; derived from op_type when omitted")
    timestamp: Optional[str] = Field(default=None, description="ISO-8601 Timestamp tag; server time when omitted")
    extra_tags: Dict[str, str] = Field(default_factory=dict)
    commit: bool = Field(default=False, description="Commit the operation on the ledger after storing")
    allow_empty_locator: bool = Field(default=False, description="Return an empty locator instead of failing when every backend fails")
