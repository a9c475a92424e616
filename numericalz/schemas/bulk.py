import uuid
from datetime import date
from typing import Optional, List

from pydantic import BaseModel


class BulkTargets(BaseModel):
    # Size is checked by the coordinator so the error carries its limit
    ids: List[str]


class BulkCreateVATQuarters(BulkTargets):
    reference_date: Optional[date] = None
    assigned_user_id: Optional[uuid.UUID] = None


class BulkUpdateStage(BulkTargets):
    workflow_type: str
    stage: str
    notes: Optional[str] = None


class BulkAssign(BulkTargets):
    user_id: Optional[uuid.UUID] = None
    # Either a workflow type (ids are workflow ids) or a client category (ids are client ids)
    workflow_type: Optional[str] = None
    category: Optional[str] = None


class BulkDeleteClients(BulkTargets):
    pass


class BulkRefresh(BulkTargets):
    pass
