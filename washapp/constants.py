SERVICE_EXTERIOR = "exterior"
SERVICE_INTERIOR = "interior"
SERVICE_COMPLETE = "complete"

SERVICE_TYPE_CHOICES = (
    (SERVICE_EXTERIOR, "Exterior wash"),
    (SERVICE_INTERIOR, "Interior cleaning"),
    (SERVICE_COMPLETE, "Complete wash"),
)

SERVICE_TYPES = tuple(value for value, _label in SERVICE_TYPE_CHOICES)

STATUS_PENDING = "pending"
STATUS_ACCEPTED = "accepted"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"

# Statuses in which a provider must be bound to the request.
PROVIDER_BOUND_STATUSES = frozenset({STATUS_ACCEPTED, STATUS_IN_PROGRESS, STATUS_COMPLETED})
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_CANCELLED})
EXPIRABLE_STATUSES = frozenset({STATUS_PENDING, STATUS_ACCEPTED})

DECLINE_REASON_DECLINED = "declined"
DECLINE_REASON_CANCELLED = "cancelled"

SERVICE_MATCH_STRICT = "strict"
SERVICE_MATCH_LENIENT = "lenient"
SERVICE_MATCH_POLICIES = (SERVICE_MATCH_STRICT, SERVICE_MATCH_LENIENT)

ACTOR_CLIENT = "client"
ACTOR_PROVIDER = "provider"
ACTOR_SYSTEM = "system"

SOURCE_USER = "user"
SOURCE_SWEEPER = "sweeper"

PROVIDER_FEED_GROUP = "provider_feed"
