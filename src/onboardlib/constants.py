"""Project-wide named constants.

Vocabularies shared by the classifier boundary, the correction grammar and
the feedback store, plus the defaults of the pipeline configuration.
"""

# Entity types a classifier may emit. Order is the order used in prompts.
ENTITY_TYPES: tuple[str, ...] = (
    "person",
    "company",
    "project",
    "tool",
    "topic",
    "location",
    "action_item",
)

# Directed relationship types, grouped the way the extraction prompt lists them.
RELATIONSHIP_GROUPS: dict[str, tuple[str, ...]] = {
    "Professional": ("WORKS_WITH", "REPORTS_TO", "WORKS_FOR", "LEADS", "WORKS_ON", "EXPERT_IN", "LOCATED_IN"),
    "Personal": ("FRIEND_OF", "FAMILY_OF", "MARRIED_TO", "SIBLING_OF"),
    "Business": ("PARTNERS_WITH", "COMPETES_WITH", "OWNS"),
    "Project": ("RELATED_TO", "DEPENDS_ON", "PART_OF"),
    "Topic": ("SUBTOPIC_OF", "ASSOCIATED_WITH"),
}

RELATIONSHIP_TYPES: tuple[str, ...] = tuple(
    rel_type for group in RELATIONSHIP_GROUPS.values() for rel_type in group
)

ENTITY_TYPE_SET: frozenset[str] = frozenset(ENTITY_TYPES)
RELATIONSHIP_TYPE_SET: frozenset[str] = frozenset(RELATIONSHIP_TYPES)

# Pipeline defaults (seconds for delays)
DEFAULT_BATCH_SIZE: int = 50
DEFAULT_INTER_BATCH_DELAY: float = 0.5
DEFAULT_MAX_MESSAGES_PER_DAY: int = 100
DEFAULT_LOOKBACK_DAYS: int = 365
DEFAULT_PAUSE_POLL_INTERVAL: float = 0.5
DEFAULT_SYNC_CALL_DELAY: float = 0.1
DEFAULT_TASK_LIST_NAME: str = "Izzie Discovered"

# Run summary and keep-alive
TOP_N: int = 10
KEEPALIVE_INTERVAL: float = 30.0

# Environment variable that overrides the data directory
DATA_DIR_ENV: str = "ONBOARDLIB_DATA_DIR"
