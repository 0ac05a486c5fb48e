"""Shared constants for sopflow."""

CONFIDENCE_THRESHOLD = 0.7

MIN_TIER = 0
MAX_TIER = 3

ENGINE_TOPIC = "engine"
SCHEDULER_TOPIC = "scheduler"
DEADLETTER_SUFFIX = ".deadletter"

HUMAN_RESPONSE_KEY = "human_response"
HUMAN_EDIT_KEY = "human_edit"

DEFAULT_OPS_CHANNEL = "#ops-log"
DEFAULT_ESCALATION_CHANNEL = "#escalations"

DEFAULT_SYSTEM_PROMPT = (
    "You are an AI assistant helping with business process automation. "
    "Respond with structured JSON including a 'response' field and a "
    "'confidence' score between 0.0 and 1.0."
)
