from app.services.payload_parser import (
    Attachment,
    InboundEvent,
    decode_body,
    parse_lead_trigger,
    parse_message_event,
)
from app.services.state_machine import (
    InvalidTransitionError,
    ProofAction,
    ProofDecision,
    ProofStage,
    can_transition,
    classify_stage,
    decide,
    transition,
)
