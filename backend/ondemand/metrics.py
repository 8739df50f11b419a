"""Custom Prometheus metrics for booking and dispatch observability."""

from prometheus_client import Counter, Gauge

# Booking lifecycle counters
BOOKINGS_CREATED = Counter(
    "ondemand_bookings_created_total",
    "Total bookings created",
    ["assigned"],
)
BOOKING_TRANSITIONS = Counter(
    "ondemand_booking_transitions_total",
    "Total booking state transitions",
    ["from_status", "to_status"],
)
BOOKING_CONFLICTS = Counter(
    "ondemand_booking_conflicts_total",
    "Booking operations rejected because of a concurrent or repeated write",
    ["operation"],
)

# Rating counters
RATINGS_SUBMITTED = Counter(
    "ondemand_ratings_submitted_total",
    "Total ratings submitted",
    ["role"],
)

# Notification delivery
NOTIFICATIONS_DELIVERED = Counter(
    "ondemand_notifications_delivered_total",
    "Events handed to an open subscriber channel",
    ["event_type"],
)
NOTIFICATIONS_DROPPED = Counter(
    "ondemand_notifications_dropped_total",
    "Events dropped because no channel was open or delivery failed",
    ["reason"],
)
NOTIFICATION_SUBSCRIBERS = Gauge(
    "ondemand_notification_subscribers",
    "Currently open notification channels",
)

# Geospatial index
MECHANIC_INDEX_SIZE = Gauge(
    "ondemand_mechanic_index_size",
    "Mechanics currently held in the in-memory index",
)

# Scheduler job counters
SCHEDULER_JOB_RUNS = Counter(
    "ondemand_scheduler_job_runs_total",
    "Total scheduler job executions",
    ["job_name", "status"],
)

# Registration counters
USERS_REGISTERED = Counter(
    "ondemand_users_registered_total",
    "Total users registered",
    ["role"],
)
