"""Shared defaults for the orchestration core."""

TERMINAL = "terminal"

# Step executions allowed per run, as a multiple of the step count.
CYCLE_BOUND_FACTOR = 2

DEFAULT_MAX_ITERATIONS = 5
DEFAULT_IDEMPOTENCY_TTL = 3600
DEFAULT_NOTE_LIMIT = 20
DEFAULT_TOOL_TIMEOUT = 30.0
MAX_STEP_RETRIES = 3
MAX_DELIVERY_ATTEMPTS = 3
STALE_EXECUTION_SECONDS = 24 * 60 * 60

FALLBACK_CONTENT = "Task completed."

# Rough blended price used for the ledger's cost column.
COST_PER_1K_TOKENS = 0.005

AGENT_EXECUTION_TOPIC = "agent-executions"
WORKFLOW_EXECUTION_TOPIC = "workflow-executions"
