import uuid
from datetime import date
from typing import Optional, List

from pydantic import BaseModel, Field, field_validator

class StageAdvanceRequest(BaseModel):
    stage: str
    notes: Optional[str] = None
    # Optional optimistic lock: rejected with 409 if the stage moved on
    expected_stage: Optional[str] = None

    @field_validator('notes', 'expected_stage', mode='before')
    @classmethod
    def empty_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

class WorkflowAssignRequest(BaseModel):
    user_id: Optional[uuid.UUID] = None

class VATQuarterCreate(BaseModel):
    reference_date: Optional[date] = None
    assigned_user_id: Optional[uuid.UUID] = None

class LtdWorkflowCreate(BaseModel):
    assigned_user_id: Optional[uuid.UUID] = None

class NonLtdWorkflowCreate(BaseModel):
    year: Optional[int] = Field(default=None, ge=2000, le=2100)
    assigned_user_id: Optional[uuid.UUID] = None

class StageInfo(BaseModel):
    stage: str
    name: str
    progress: int
    is_terminal: bool


class StageModelResponse(BaseModel):
    workflow_type: str
    stages: List[StageInfo]
