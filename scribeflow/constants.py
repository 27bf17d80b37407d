"""Default values shared across scribeflow components."""

DEFAULT_TEMPLATE_NAME = "Base Workflow"
DEFAULT_CHAT_TOPIC = "chat-jobs"

DEFAULT_RETRIEVAL_TIMEOUT = 5.0
DEFAULT_MIN_RELEVANCE_SCORE = 0.6
DEFAULT_PARTITION_LIMIT = 5
DEFAULT_EMBEDDING_MODEL = "all-MiniLM-L6-v2"
DEFAULT_EXCERPT_CHARS = 500

MAX_HANDOFF_CHAIN = 3

DEFAULT_DEDUP_WINDOW = 5
DEFAULT_DUPLICATE_CONTENT_SECONDS = 10.0

DEFAULT_CLARIFICATION_MESSAGE = (
    "Sorry, I didn't quite catch that. Could you rephrase or add a bit more detail "
    "so we can keep going?"
)
DEFAULT_STALLED_MESSAGE = (
    "I'm unable to continue this workflow right now. Please start a new request "
    "and we'll pick it up from there."
)
DEFAULT_FALLBACK_MESSAGE = "Let's try that again. What would you like to do next?"
DEFAULT_DISCARDED_MESSAGE = "This workflow was cancelled, so that last step was not saved."

CROSS_WORKFLOW_DECISION = "cross_workflow_request"
CANCELLED_SELECTION = "cancelled"
DEFAULT_COMPLETION_MESSAGE = (
    "All done! Let me know if you'd like to create anything else."
)
