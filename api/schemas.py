"""Request bodies."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from sync.manual import ManualSyncRequest


class ManualSyncBody(BaseModel):
    """POST /api/sync/manual body (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True)

    type: str
    id: Optional[str] = None
    from_block: Optional[int] = Field(default=None, alias="fromBlock")
    job_id: Optional[int] = Field(default=None, alias="jobId")
    escrow_address: Optional[str] = Field(default=None, alias="escrowAddress")
    freelancer_address: Optional[str] = Field(default=None, alias="freelancerAddress")

    def to_request(self) -> ManualSyncRequest:
        return ManualSyncRequest(
            type=self.type,
            id=self.id,
            from_block=self.from_block,
            job_id=self.job_id,
            escrow_address=self.escrow_address,
            freelancer_address=self.freelancer_address,
        )
