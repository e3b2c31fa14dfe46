"""
Call outcome classification.

The state machine only ever sees an enumerated CallOutcome. How a call report
becomes one is pluggable: the default classifier reads the provider's
enumerated fields (explicit outcome, structured data, success evaluation,
ended reason). A transcript or sentiment analyser can be dropped in by
implementing OutcomeClassifier.
"""
import logging
from typing import Optional, Protocol

from leadrelay.schemas.events import CallOutcome, CallReport

logger = logging.getLogger(__name__)

POSITIVE_OUTCOMES = {"interested", "positive", "callback_requested", "qualified", "success"}
BOOKED_OUTCOMES = {"booked", "appointment_booked", "meeting_booked"}
NO_ANSWER_OUTCOMES = {
    "no-answer", "no_answer", "busy", "declined", "voicemail", "failed", "not_reached",
}

# Vapi endedReason values that mean the lead was never reached
NO_ANSWER_ENDED_REASONS = {
    "customer-did-not-answer",
    "customer-busy",
    "voicemail",
    "silence-timed-out",
    "customer-did-not-give-microphone-permission",
    "twilio-failed-to-connect-call",
    "vonage-failed-to-connect-call",
}


class OutcomeClassifier(Protocol):
    def classify(self, report: CallReport) -> CallOutcome:
        ...


def _lookup(value: Optional[str]) -> Optional[CallOutcome]:
    if not value or not isinstance(value, str):
        return None
    key = value.strip().lower()
    if key in BOOKED_OUTCOMES:
        return CallOutcome.BOOKED
    if key in POSITIVE_OUTCOMES:
        return CallOutcome.POSITIVE
    if key in NO_ANSWER_OUTCOMES:
        return CallOutcome.NO_ANSWER
    return None


class ProviderOutcomeClassifier:
    """Maps the provider's enumerated fields to a CallOutcome. First decisive field wins."""

    def classify(self, report: CallReport) -> CallOutcome:
        if report.booked:
            return CallOutcome.BOOKED

        for candidate in (report.outcome, report.structured_data.get("outcome")):
            outcome = _lookup(candidate)
            if outcome is not None:
                return outcome

        if report.structured_data.get("booked") is True:
            return CallOutcome.BOOKED
        if report.structured_data.get("interested") is True:
            return CallOutcome.POSITIVE

        if report.ended_reason and report.ended_reason.strip().lower() in NO_ANSWER_ENDED_REASONS:
            return CallOutcome.NO_ANSWER

        evaluation = report.success_evaluation
        if evaluation is True or (isinstance(evaluation, str) and evaluation.strip().lower() == "true"):
            return CallOutcome.POSITIVE

        return CallOutcome.AMBIGUOUS


default_classifier = ProviderOutcomeClassifier()
