from typing import Optional

from pydantic import BaseModel, ConfigDict


class AssignRequest(BaseModel):
    user_id: str


class DraftPayload(BaseModel):
    """
    Partial answers. Only the keys a client sends are saved; values are
    validated against their enumerations by the service.
    """
    model_config = ConfigDict(extra="ignore")

    attributed_to_mm: Optional[bool] = None
    applied_count: Optional[str] = None
    emailed_count: Optional[str] = None
    interview_count: Optional[str] = None
    reason: Optional[str] = None
    visa_has_lawyer: Optional[bool] = None
    visa_type: Optional[str] = None
    downsell_variant: Optional[str] = None


class FinalizeFoundJobRequest(BaseModel):
    has_lawyer: bool
    visa_type: str


class FinalizeStillLookingRequest(BaseModel):
    reason: str
