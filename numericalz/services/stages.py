"""
Workflow stage model.

Per workflow type: the stage set, display names, main-line order, terminal
stages and the milestone each stage stamps on first entry.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Union

from ..errors import InvalidStage, ValidationError


class WorkflowType(str, Enum):
    VAT = "VAT"
    LTD = "LTD"
    NON_LTD = "NON_LTD"


class VATStage(str, Enum):
    CLIENT_BOOKKEEPING = "CLIENT_BOOKKEEPING"
    PAPERWORK_PENDING_CHASE = "PAPERWORK_PENDING_CHASE"
    PAPERWORK_CHASED = "PAPERWORK_CHASED"
    PAPERWORK_RECEIVED = "PAPERWORK_RECEIVED"
    WORK_IN_PROGRESS = "WORK_IN_PROGRESS"
    QUERIES_PENDING = "QUERIES_PENDING"
    REVIEW_PENDING_MANAGER = "REVIEW_PENDING_MANAGER"
    REVIEWED_BY_MANAGER = "REVIEWED_BY_MANAGER"
    REVIEW_PENDING_PARTNER = "REVIEW_PENDING_PARTNER"
    REVIEWED_BY_PARTNER = "REVIEWED_BY_PARTNER"
    EMAILED_TO_PARTNER = "EMAILED_TO_PARTNER"
    EMAILED_TO_CLIENT = "EMAILED_TO_CLIENT"
    CLIENT_APPROVED = "CLIENT_APPROVED"
    FILED_TO_HMRC = "FILED_TO_HMRC"
    CLIENT_SELF_FILING = "CLIENT_SELF_FILING"


class LtdStage(str, Enum):
    WAITING_FOR_YEAR_END = "WAITING_FOR_YEAR_END"
    PAPERWORK_PENDING_CHASE = "PAPERWORK_PENDING_CHASE"
    PAPERWORK_CHASED = "PAPERWORK_CHASED"
    PAPERWORK_RECEIVED = "PAPERWORK_RECEIVED"
    WORK_IN_PROGRESS = "WORK_IN_PROGRESS"
    DISCUSS_WITH_MANAGER = "DISCUSS_WITH_MANAGER"
    REVIEWED_BY_MANAGER = "REVIEWED_BY_MANAGER"
    REVIEW_BY_PARTNER = "REVIEW_BY_PARTNER"
    REVIEWED_BY_PARTNER = "REVIEWED_BY_PARTNER"
    REVIEW_DONE_HELLO_SIGN = "REVIEW_DONE_HELLO_SIGN"
    SENT_TO_CLIENT_HELLO_SIGN = "SENT_TO_CLIENT_HELLO_SIGN"
    APPROVED_BY_CLIENT = "APPROVED_BY_CLIENT"
    SUBMISSION_APPROVED_PARTNER = "SUBMISSION_APPROVED_PARTNER"
    FILED_TO_COMPANIES_HOUSE = "FILED_TO_COMPANIES_HOUSE"
    FILED_TO_HMRC = "FILED_TO_HMRC"
    CLIENT_SELF_FILING = "CLIENT_SELF_FILING"


class NonLtdStage(str, Enum):
    WAITING_FOR_YEAR_END = "WAITING_FOR_YEAR_END"
    PAPERWORK_PENDING_CHASE = "PAPERWORK_PENDING_CHASE"
    PAPERWORK_CHASED = "PAPERWORK_CHASED"
    PAPERWORK_RECEIVED = "PAPERWORK_RECEIVED"
    WORK_IN_PROGRESS = "WORK_IN_PROGRESS"
    DISCUSS_WITH_MANAGER = "DISCUSS_WITH_MANAGER"
    REVIEWED_BY_MANAGER = "REVIEWED_BY_MANAGER"
    REVIEW_BY_PARTNER = "REVIEW_BY_PARTNER"
    REVIEWED_BY_PARTNER = "REVIEWED_BY_PARTNER"
    REVIEW_DONE_HELLO_SIGN = "REVIEW_DONE_HELLO_SIGN"
    SENT_TO_CLIENT_HELLO_SIGN = "SENT_TO_CLIENT_HELLO_SIGN"
    APPROVED_BY_CLIENT = "APPROVED_BY_CLIENT"
    SUBMISSION_APPROVED_PARTNER = "SUBMISSION_APPROVED_PARTNER"
    FILED_TO_HMRC = "FILED_TO_HMRC"
    CLIENT_SELF_FILING = "CLIENT_SELF_FILING"


@dataclass(frozen=True)
class StageDefinition:
    workflow_type: WorkflowType
    stage_enum: type
    names: Dict[str, str]
    main_line: List[str]
    branches: List[str]
    terminal: frozenset
    # stage -> milestone column prefix (e.g. "work_started" -> work_started_date)
    milestones: Dict[str, str] = field(default_factory=dict)


# Stages a workflow may be sent back to for rework
REGRESSION_ALLOWED_STAGES = (
    "PAPERWORK_PENDING_CHASE",
    "PAPERWORK_CHASED",
    "PAPERWORK_RECEIVED",
    "WORK_IN_PROGRESS",
)


_VAT = StageDefinition(
    workflow_type=WorkflowType.VAT,
    stage_enum=VATStage,
    names={
        "CLIENT_BOOKKEEPING": "Client to do bookkeeping",
        "PAPERWORK_PENDING_CHASE": "Pending to chase",
        "PAPERWORK_CHASED": "Paperwork chased",
        "PAPERWORK_RECEIVED": "Paperwork received",
        "WORK_IN_PROGRESS": "Work in progress",
        "QUERIES_PENDING": "Queries pending",
        "REVIEW_PENDING_MANAGER": "Review pending by manager",
        "REVIEWED_BY_MANAGER": "Reviewed by manager",
        "REVIEW_PENDING_PARTNER": "Review pending by partner",
        "REVIEWED_BY_PARTNER": "Reviewed by partner",
        "EMAILED_TO_PARTNER": "Emailed to partner",
        "EMAILED_TO_CLIENT": "Emailed to client",
        "CLIENT_APPROVED": "Client approved",
        "FILED_TO_HMRC": "Filed to HMRC",
        "CLIENT_SELF_FILING": "Client self-filing",
    },
    main_line=[
        "CLIENT_BOOKKEEPING",
        "PAPERWORK_PENDING_CHASE",
        "PAPERWORK_CHASED",
        "PAPERWORK_RECEIVED",
        "WORK_IN_PROGRESS",
        "QUERIES_PENDING",
        "REVIEW_PENDING_MANAGER",
        "REVIEWED_BY_MANAGER",
        "REVIEW_PENDING_PARTNER",
        "REVIEWED_BY_PARTNER",
        "EMAILED_TO_PARTNER",
        "EMAILED_TO_CLIENT",
        "CLIENT_APPROVED",
        "FILED_TO_HMRC",
    ],
    branches=["CLIENT_SELF_FILING"],
    terminal=frozenset({"FILED_TO_HMRC", "CLIENT_SELF_FILING"}),
    milestones={
        "PAPERWORK_CHASED": "chase_started",
        "PAPERWORK_RECEIVED": "paperwork_received",
        "WORK_IN_PROGRESS": "work_started",
        "REVIEW_PENDING_MANAGER": "work_finished",
        "EMAILED_TO_CLIENT": "sent_to_client",
        "CLIENT_APPROVED": "client_approved",
        "FILED_TO_HMRC": "filed_to_hmrc",
    },
)

_LTD = StageDefinition(
    workflow_type=WorkflowType.LTD,
    stage_enum=LtdStage,
    names={
        "WAITING_FOR_YEAR_END": "Waiting for Year End",
        "PAPERWORK_PENDING_CHASE": "Pending to Chase Paperwork",
        "PAPERWORK_CHASED": "Paperwork Chased",
        "PAPERWORK_RECEIVED": "Paperwork Received",
        "WORK_IN_PROGRESS": "Work in Progress",
        "DISCUSS_WITH_MANAGER": "To Discuss with Manager",
        "REVIEWED_BY_MANAGER": "Reviewed by Manager",
        "REVIEW_BY_PARTNER": "To Review by Partner",
        "REVIEWED_BY_PARTNER": "Reviewed by Partner",
        "REVIEW_DONE_HELLO_SIGN": "Review Done - Hello Sign to Client",
        "SENT_TO_CLIENT_HELLO_SIGN": "Sent to client on Hello Sign",
        "APPROVED_BY_CLIENT": "Approved by Client",
        "SUBMISSION_APPROVED_PARTNER": "Submission Approved by Partner",
        "FILED_TO_COMPANIES_HOUSE": "Filed to Companies House",
        "FILED_TO_HMRC": "Filed to HMRC",
        "CLIENT_SELF_FILING": "Client Self-Filing",
    },
    main_line=[
        "WAITING_FOR_YEAR_END",
        "PAPERWORK_PENDING_CHASE",
        "PAPERWORK_CHASED",
        "PAPERWORK_RECEIVED",
        "WORK_IN_PROGRESS",
        "DISCUSS_WITH_MANAGER",
        "REVIEWED_BY_MANAGER",
        "REVIEW_BY_PARTNER",
        "REVIEWED_BY_PARTNER",
        "REVIEW_DONE_HELLO_SIGN",
        "SENT_TO_CLIENT_HELLO_SIGN",
        "APPROVED_BY_CLIENT",
        "SUBMISSION_APPROVED_PARTNER",
        "FILED_TO_COMPANIES_HOUSE",
        "FILED_TO_HMRC",
    ],
    branches=["CLIENT_SELF_FILING"],
    terminal=frozenset({"FILED_TO_HMRC", "CLIENT_SELF_FILING"}),
    milestones={
        "PAPERWORK_CHASED": "chase_started",
        "PAPERWORK_RECEIVED": "paperwork_received",
        "WORK_IN_PROGRESS": "work_started",
        "DISCUSS_WITH_MANAGER": "manager_discussion",
        "REVIEW_BY_PARTNER": "partner_review",
        "REVIEW_DONE_HELLO_SIGN": "review_completed",
        "SENT_TO_CLIENT_HELLO_SIGN": "sent_to_client",
        "APPROVED_BY_CLIENT": "client_approved",
        "SUBMISSION_APPROVED_PARTNER": "partner_approved",
        "FILED_TO_COMPANIES_HOUSE": "filed_to_companies_house",
        "FILED_TO_HMRC": "filed_to_hmrc",
        "CLIENT_SELF_FILING": "client_self_filing",
    },
)

_NON_LTD = StageDefinition(
    workflow_type=WorkflowType.NON_LTD,
    stage_enum=NonLtdStage,
    names={k: v for k, v in _LTD.names.items() if k != "FILED_TO_COMPANIES_HOUSE"},
    main_line=[s for s in _LTD.main_line if s != "FILED_TO_COMPANIES_HOUSE"],
    branches=["CLIENT_SELF_FILING"],
    terminal=frozenset({"FILED_TO_HMRC", "CLIENT_SELF_FILING"}),
    milestones={k: v for k, v in _LTD.milestones.items() if k != "FILED_TO_COMPANIES_HOUSE"},
)

_DEFINITIONS: Dict[WorkflowType, StageDefinition] = {
    WorkflowType.VAT: _VAT,
    WorkflowType.LTD: _LTD,
    WorkflowType.NON_LTD: _NON_LTD,
}


def coerce_workflow_type(value: Union[str, WorkflowType]) -> WorkflowType:
    if isinstance(value, WorkflowType):
        return value
    normalized = str(value).strip().upper().replace("-", "_")
    aliases = {"ACCOUNTS_LTD": "LTD", "ACCOUNTS_NON_LTD": "NON_LTD", "NONLTD": "NON_LTD"}
    normalized = aliases.get(normalized, normalized)
    try:
        return WorkflowType(normalized)
    except ValueError:
        raise ValidationError(f"Unknown workflow type: {value}") from None


def definition(workflow_type: Union[str, WorkflowType]) -> StageDefinition:
    return _DEFINITIONS[coerce_workflow_type(workflow_type)]


def _stage_value(stage) -> Optional[str]:
    if stage is None:
        return None
    if isinstance(stage, Enum):
        return stage.value
    return str(stage)


def stage_names(workflow_type) -> Dict[str, str]:
    return dict(definition(workflow_type).names)


def main_line(workflow_type) -> List[str]:
    return list(definition(workflow_type).main_line)


def stage_order(workflow_type) -> List[str]:
    """Main line followed by branch stages; one entry per named stage."""
    d = definition(workflow_type)
    return list(d.main_line) + list(d.branches)


def initial_stage(workflow_type) -> str:
    return definition(workflow_type).main_line[0]


def is_valid_stage(workflow_type, stage) -> bool:
    return _stage_value(stage) in definition(workflow_type).names


def coerce_stage(workflow_type, stage) -> str:
    """Return the canonical stage value or raise InvalidStage."""
    value = _stage_value(stage)
    if value is not None:
        value = value.strip().upper()
    if not value or value not in definition(workflow_type).names:
        raise InvalidStage(stage, coerce_workflow_type(workflow_type).value)
    return value


def is_terminal(workflow_type, stage) -> bool:
    return _stage_value(stage) in definition(workflow_type).terminal


def display_name(workflow_type, stage) -> str:
    value = _stage_value(stage)
    return definition(workflow_type).names.get(value, value or "")


def milestone_for(workflow_type, stage) -> Optional[str]:
    return definition(workflow_type).milestones.get(_stage_value(stage))


def progress_percent(workflow_type, stage) -> int:
    """0..100 along the main line. Branch terminals count as complete; unknown stages as 0."""
    try:
        d = definition(workflow_type)
    except ValidationError:
        return 0
    value = _stage_value(stage)
    if value in d.branches and value in d.terminal:
        return 100
    if value not in d.main_line:
        return 0
    return round(100 * (d.main_line.index(value) + 1) / len(d.main_line))


def next_stage(workflow_type, stage) -> Optional[str]:
    line = definition(workflow_type).main_line
    value = _stage_value(stage)
    if value not in line:
        return None
    idx = line.index(value)
    return line[idx + 1] if idx + 1 < len(line) else None


def previous_stage(workflow_type, stage) -> Optional[str]:
    line = definition(workflow_type).main_line
    value = _stage_value(stage)
    if value not in line:
        return None
    idx = line.index(value)
    return line[idx - 1] if idx > 0 else None


def allowed_next_stages(workflow_type, stage) -> List[str]:
    """Next main-line stage plus any earlier rework stage."""
    line = definition(workflow_type).main_line
    value = _stage_value(stage)
    if value not in line:
        return []
    idx = line.index(value)
    allowed = []
    if idx + 1 < len(line):
        allowed.append(line[idx + 1])
    for s in REGRESSION_ALLOWED_STAGES:
        if s in line and line.index(s) < idx and s not in allowed:
            allowed.append(s)
    return allowed


def validate_stage_transition(workflow_type, from_stage, to_stage) -> dict:
    """
    Advisory check of a transition against the main line.

    The engine does not enforce ordering; callers use this to warn about
    skipped stages or regressions outside the rework set.
    """
    line = definition(workflow_type).main_line
    src = _stage_value(from_stage)
    dst = _stage_value(to_stage)

    def result(is_valid, message, *, skipped=None, allowed_from=None):
        return {
            "is_valid": is_valid,
            "is_skipping": bool(skipped),
            "skipped_stages": skipped or [],
            "message": message,
            "allowed_next_stages": allowed_next_stages(workflow_type, allowed_from or dst),
        }

    if src is None:
        return result(True, "Valid initial stage selection")
    if dst in definition(workflow_type).branches:
        return result(True, "Valid branch to terminal stage")
    if src not in line or dst not in line:
        return {
            "is_valid": False,
            "is_skipping": False,
            "skipped_stages": [],
            "message": "Invalid stage detected",
            "allowed_next_stages": [],
        }
    if src == dst:
        return result(True, "No stage change")

    src_idx, dst_idx = line.index(src), line.index(dst)
    if dst_idx < src_idx:
        if dst in REGRESSION_ALLOWED_STAGES:
            return result(True, "Valid regression for rework")
        return result(False, "Regression not allowed to this stage", allowed_from=src)
    if dst_idx == src_idx + 1:
        return result(True, "Valid stage progression")
    skipped = line[src_idx + 1:dst_idx]
    return result(False, f"Cannot skip stages: {', '.join(skipped)}", skipped=skipped, allowed_from=src)
