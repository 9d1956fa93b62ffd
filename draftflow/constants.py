"""Default names and limits shared across draftflow."""

CONTENT_GENERATION_QUEUE = "content-generation"
IMAGE_GENERATION_QUEUE = "image-generation"
ORCHESTRATOR_QUEUE = "orchestrator"
INPUT_PROCESSED_QUEUE = "input-processed"
EVENTS_TOPIC = "orchestration-events"

CONTENT_GENERATOR_AGENT = "content-generator"
IMAGE_GENERATOR_AGENT = "image-generator"

CONTENT_STEP_ID = "content-generation"
IMAGE_STEP_ID = "image-generation"
REVIEW_STEP_ID = "review"

DEFAULT_GENERATION_MAX_RETRIES = 3
DEFAULT_REVIEW_MAX_RETRIES = 1

# ``current_step`` markers once a workflow is terminal
COMPLETED_MARKER = "completed"
FAILED_MARKER = "failed"

DEFAULT_CALL_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_CONFLICT_RETRIES = 3

# ``errorType`` values reported by agents that are worth re-issuing
RETRYABLE_AGENT_ERROR_TYPES = frozenset(
    {
        "ThrottlingException",
        "ServiceUnavailable",
        "InternalServerError",
        "RequestTimeout",
        "NetworkingError",
        "TimeoutError",
        "ECONNRESET",
        "ETIMEDOUT",
    }
)
