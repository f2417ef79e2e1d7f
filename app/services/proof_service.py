"""Payment-proof handling for inbound CRM messages.

One event produces at most one classifier call and exactly one lead write
(none when the lead is outside the proof flow). The audit note is only added
after an accepting write went through.
"""

from dataclasses import dataclass, field
from typing import Optional

from app.logging_config import LoggerAdapter, get_logger
from app.schemas.tenant import TenantConfig
from app.services.alert_service import alert_escalation
from app.services.attribution_service import extract_tracking_id
from app.services.kommo_service import KommoClient
from app.services.payload_parser import Attachment, InboundEvent
from app.services.state_machine import (
    ProofAction,
    ProofDecision,
    classify_stage,
    decide,
    is_eligible,
    target_stage_id,
)
from app.services.vision_service import AttachmentClassification, VisionClassifier

logger = get_logger("proof_service")


@dataclass
class ProofOutcome:
    success: bool
    message: str
    decision: Optional[ProofDecision] = None
    classification: Optional[AttachmentClassification] = None
    data: dict = field(default_factory=dict)

    def response_data(self) -> dict:
        data = dict(self.data)
        if self.decision is not None:
            data["action"] = self.decision.action.value
            data["retry_count"] = self.decision.retry_count
            data["reason"] = self.decision.reason
        if self.classification is not None:
            data["classification"] = {
                "is_proof": self.classification.is_proof,
                "confidence": self.classification.confidence,
                "reason": self.classification.reason,
            }
        return data


def audit_note(attachment: Attachment, classification: AttachmentClassification) -> str:
    lines = [
        "✅ Payment proof received",
        f"File: {attachment.name}",
        f"URL: {attachment.url}",
        f"Confidence: {classification.confidence}",
    ]
    if classification.amount is not None:
        lines.append(f"Amount: {classification.amount:g}")
    if classification.reason:
        lines.append(f"Reason: {classification.reason}")
    return "\n".join(lines)


def handle_message_event(
    event: InboundEvent,
    config: TenantConfig,
    kommo: KommoClient,
    classifier: VisionClassifier,
) -> ProofOutcome:
    log = LoggerAdapter(logger, {"client_id": config.client_id, "lead_id": event.lead_id, "strategy": event.source})

    if event.lead_id is None:
        log.info("Event without lead id ignored")
        return ProofOutcome(True, "No lead id - ignored")
    if not event.is_incoming:
        log.info("Outgoing message ignored")
        return ProofOutcome(True, "Outgoing message - ignored", data={"lead_id": event.lead_id})

    state = kommo.fetch_lead_state(event.lead_id)
    if state is None:
        log.error("Could not fetch lead state")
        return ProofOutcome(True, "Could not fetch lead data", data={"lead_id": event.lead_id})

    stages = config.kommo.stages
    stage = classify_stage(state.status_id, stages)
    base_data = {"lead_id": event.lead_id, "stage": stage.value, "previous_retry_count": state.retry_count}

    # leads outside the flow never reach the classifier
    if not is_eligible(stage):
        log.info("Lead outside proof flow", context={"stage": stage.value, "status_id": state.status_id})
        decision = decide(stage, state.retry_count, None, config.kommo.max_retries)
        return ProofOutcome(True, "Lead not waiting for proof - ignored", decision, data=base_data)

    attachment = event.attachment
    if attachment is None and event.needs_attachment_lookup:
        attachment = kommo.fetch_last_attachment(event.lead_id)

    classification = None
    verdict = None
    if attachment is not None and attachment.is_proof_candidate:
        classification = classifier.classify(attachment.url, attachment.name)
        verdict = classification.is_proof
    elif attachment is not None:
        log.info("Attachment kind not usable as proof", context={"kind": attachment.kind})

    decision = decide(stage, state.retry_count, verdict, config.kommo.max_retries)
    tracking_id = extract_tracking_id(event.message_text)
    amount = classification.amount if classification is not None and decision.action is ProofAction.ACCEPT else None

    written = kommo.write_lead_state(
        event.lead_id,
        stage_id=target_stage_id(decision, stages),
        retry_count=decision.retry_count,
        tracking_id=tracking_id,
        amount=amount,
    )
    log.info(
        f"Proof decision: {decision.action.value}",
        context={"decision": decision.action.value, "retry_count": decision.retry_count, "written": written},
    )
    if not written:
        return ProofOutcome(False, "Failed to update lead", decision, classification, base_data)

    if decision.action is ProofAction.ACCEPT:
        kommo.add_note(event.lead_id, audit_note(attachment, classification))
        return ProofOutcome(True, "Payment proof accepted", decision, classification, base_data)

    if decision.action is ProofAction.ESCALATE:
        alert_escalation(config.client_id, event.lead_id, decision.retry_count)
        return ProofOutcome(True, "Attempts exhausted - lead escalated", decision, classification, base_data)

    return ProofOutcome(True, "No valid payment proof", decision, classification, base_data)
