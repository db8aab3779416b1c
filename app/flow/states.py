"""
app/flow/states.py

Purpose: Defines all intake session stages

- Enum for each step in the flow
  (AWAITING_NAME, AWAITING_EMAIL, AWAITING_PHONE, COMPLETED, ...)
- Single source of truth for flow stages
- Stage transition validation
- Metadata for each stage (field collected, prompt)
"""

from enum import Enum
from typing import Dict, List, Optional
from dataclasses import dataclass

from utils.constants import ASK_NAME_MESSAGE, ASK_EMAIL_MESSAGE, ASK_PHONE_MESSAGE


class SessionStage(str, Enum):
    """
    Defines all possible stages of the intake conversation.
    Transitions only move forward.
    """

    # Collection
    AWAITING_NAME = "AWAITING_NAME"
    AWAITING_EMAIL = "AWAITING_EMAIL"
    AWAITING_PHONE = "AWAITING_PHONE"

    # Terminal
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


INITIAL_STAGE = SessionStage.AWAITING_NAME

TERMINAL_STAGES = frozenset({
    SessionStage.COMPLETED,
    SessionStage.EXPIRED,
    SessionStage.CANCELLED,
})


@dataclass(frozen=True)
class StageMetadata:
    """
    Metadata associated with each collection stage.
    """
    field: str  # Form field captured at this stage
    prompt: str


STAGE_METADATA: Dict[SessionStage, StageMetadata] = {
    SessionStage.AWAITING_NAME: StageMetadata(
        field="name",
        prompt=ASK_NAME_MESSAGE,
    ),
    SessionStage.AWAITING_EMAIL: StageMetadata(
        field="email",
        prompt=ASK_EMAIL_MESSAGE,
    ),
    SessionStage.AWAITING_PHONE: StageMetadata(
        field="phone",
        prompt=ASK_PHONE_MESSAGE,
    ),
}


# Valid transitions; re-prompts keep the stage and are not transitions
STAGE_TRANSITIONS: Dict[SessionStage, List[SessionStage]] = {
    SessionStage.AWAITING_NAME: [
        SessionStage.AWAITING_EMAIL,
        SessionStage.EXPIRED,
        SessionStage.CANCELLED,
    ],
    SessionStage.AWAITING_EMAIL: [
        SessionStage.AWAITING_PHONE,
        SessionStage.EXPIRED,
        SessionStage.CANCELLED,
    ],
    SessionStage.AWAITING_PHONE: [
        SessionStage.COMPLETED,
        SessionStage.EXPIRED,
        SessionStage.CANCELLED,
    ],
    SessionStage.COMPLETED: [],
    SessionStage.EXPIRED: [],
    SessionStage.CANCELLED: [],
}


def is_terminal(stage: SessionStage) -> bool:
    return stage in TERMINAL_STAGES


def is_valid_transition(from_stage: SessionStage, to_stage: SessionStage) -> bool:
    """
    Checks if a stage transition is valid.

    Args:
        from_stage: Current stage
        to_stage: Target stage

    Returns:
        True if transition is allowed, False otherwise
    """
    return to_stage in STAGE_TRANSITIONS.get(from_stage, [])


def get_stage_metadata(stage: SessionStage) -> Optional[StageMetadata]:
    """
    Retrieves metadata for a collection stage (None for terminal stages).
    """
    return STAGE_METADATA.get(stage)

