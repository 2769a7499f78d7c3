"""Default limits and well-known names shared across stagewright."""

DEFAULT_MAX_REVIEW_LOOPBACKS = 3
DEFAULT_STORY_MAX_RETRIES = 2
DEFAULT_OPERATION_MAX_RETRIES = 2
DEFAULT_MAX_STORIES_PER_BATCH = 12
DEFAULT_LEASE_TTL_SECONDS = 900

DEFAULT_WORKFLOW_ID = "cc_greenfield_project"
DEFAULT_COORDINATOR_CHANNEL = "coordinator"
COMPLETIONS_TOPIC = "completions"
AGENT_TOPIC_PREFIX = "agent"

SYSTEM_ACTOR = "system:stage-engine"
DISPATCH_ERROR_SUMMARY_LIMIT = 220
RECENT_HISTORY_SIZE = 100
