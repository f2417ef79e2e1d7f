from dataclasses import dataclass
from enum import Enum
from typing import Optional

from app.schemas.tenant import StageMap


class ProofStage(str, Enum):
    WAITING_FOR_PROOF = "waiting_for_proof"
    PROOF_REJECTED = "proof_rejected"
    PROOF_RECEIVED = "proof_received"
    ESCALATED = "escalated"
    OTHER = "other"


class ProofAction(str, Enum):
    IGNORE = "ignore"
    ACCEPT = "accept"
    REJECT = "reject"
    ESCALATE = "escalate"


ELIGIBLE_STAGES = frozenset({ProofStage.WAITING_FOR_PROOF, ProofStage.PROOF_REJECTED})

VALID_TRANSITIONS = {
    ProofStage.WAITING_FOR_PROOF: [ProofStage.PROOF_RECEIVED, ProofStage.PROOF_REJECTED, ProofStage.ESCALATED],
    ProofStage.PROOF_REJECTED: [ProofStage.PROOF_RECEIVED, ProofStage.PROOF_REJECTED, ProofStage.ESCALATED],
    ProofStage.PROOF_RECEIVED: [],
    ProofStage.ESCALATED: [],
    ProofStage.OTHER: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_stage: ProofStage, to_stage: ProofStage):
        self.from_stage = from_stage
        self.to_stage = to_stage
        super().__init__(f"Invalid transition: {from_stage.value} -> {to_stage.value}")


@dataclass(frozen=True)
class ProofDecision:
    action: ProofAction
    target: Optional[ProofStage] = None
    retry_count: Optional[int] = None
    reason: str = ""


def is_eligible(stage: ProofStage) -> bool:
    return stage in ELIGIBLE_STAGES


def can_transition(from_stage: ProofStage, to_stage: ProofStage) -> bool:
    return to_stage in VALID_TRANSITIONS.get(from_stage, [])


def transition(from_stage: ProofStage, to_stage: ProofStage) -> ProofStage:
    """Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_stage, to_stage):
        raise InvalidTransitionError(from_stage, to_stage)
    return to_stage


def classify_stage(status_id: Optional[int], stages: StageMap) -> ProofStage:
    """Map a CRM status id onto the proof flow."""
    if status_id is None:
        return ProofStage.OTHER
    if status_id == stages.waiting_for_proof:
        return ProofStage.WAITING_FOR_PROOF
    if status_id == stages.proof_rejected:
        return ProofStage.PROOF_REJECTED
    if status_id == stages.proof_received:
        return ProofStage.PROOF_RECEIVED
    if status_id in (stages.manual_help, stages.no_response):
        return ProofStage.ESCALATED
    return ProofStage.OTHER


def decide(stage: ProofStage, retry_count: int, verdict: Optional[bool], max_retries: int) -> ProofDecision:
    """Next step for a lead given the classifier verdict.

    verdict is None when the message had no usable attachment; that counts
    as a miss exactly like a rejected one.
    """
    if not is_eligible(stage):
        return ProofDecision(ProofAction.IGNORE, reason=f"stage {stage.value} is outside the proof flow")

    if verdict is True:
        return ProofDecision(
            ProofAction.ACCEPT,
            target=transition(stage, ProofStage.PROOF_RECEIVED),
            retry_count=0,
            reason="valid proof",
        )

    attempts = max(retry_count, 0) + 1
    miss = "no usable attachment" if verdict is None else "not a payment proof"
    if attempts >= max_retries:
        return ProofDecision(
            ProofAction.ESCALATE,
            target=transition(stage, ProofStage.ESCALATED),
            retry_count=attempts,
            reason=f"{miss}, attempts exhausted ({attempts}/{max_retries})",
        )
    return ProofDecision(
        ProofAction.REJECT,
        target=transition(stage, ProofStage.PROOF_REJECTED),
        retry_count=attempts,
        reason=f"{miss} ({attempts}/{max_retries})",
    )


def target_stage_id(decision: ProofDecision, stages: StageMap) -> Optional[int]:
    """CRM status id for the decision; escalation prefers manual help over no-response."""
    if decision.target is ProofStage.PROOF_RECEIVED:
        return stages.proof_received
    if decision.target is ProofStage.PROOF_REJECTED:
        return stages.proof_rejected
    if decision.target is ProofStage.ESCALATED:
        return stages.manual_help if stages.manual_help is not None else stages.no_response
    return None
