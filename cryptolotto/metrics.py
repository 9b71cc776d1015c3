from prometheus_client import Counter, Histogram, Gauge

# Round metrics
ROUNDS_CREATED = Counter("cryptolotto_rounds_created_total", "Total lottery rounds created")
ROUNDS_COMPLETED = Counter("cryptolotto_rounds_completed_total", "Total lottery rounds drawn")
DRAWS_SKIPPED = Counter(
    "cryptolotto_draws_skipped_total",
    "Draw attempts that did not transition the round",
    ["reason"]  # no_sales, not_active
)
ACTIVE_ROUND_TICKETS = Gauge("cryptolotto_active_round_tickets_sold", "Tickets sold in the active round")
DRAW_DURATION = Histogram(
    "cryptolotto_draw_duration_seconds",
    "Time to execute a draw",
    buckets=[0.05, 0.1, 0.5, 1.0, 2.0, 5.0]
)

# Ticket metrics
TICKETS_ISSUED = Counter(
    "cryptolotto_tickets_issued_total",
    "Tickets minted",
    ["payment_method"]
)
TICKETS_REJECTED = Counter(
    "cryptolotto_tickets_rejected_total",
    "Ticket issuance rejections",
    ["reason"]  # capacity, not_active, not_found, reference_conflict
)
TICKETS_REPLAYED = Counter(
    "cryptolotto_tickets_replayed_total",
    "Issuance calls resolved to an existing ticket by idempotency key",
    ["payment_method"]
)

# Payment metrics
PAYMENTS_CONFIRMED = Counter(
    "cryptolotto_payments_confirmed_total",
    "Payments confirmed and fulfilled",
    ["payment_method"]
)
PAYMENTS_REJECTED = Counter(
    "cryptolotto_payments_rejected_total",
    "Payment confirmations rejected",
    ["payment_method", "reason"]
)
PAYMENTS_SWEPT = Counter(
    "cryptolotto_payments_swept_total",
    "Pending payments resolved by the sweep",
    ["outcome"]  # completed, expired, pending, error
)

# Redis stream metrics
STREAM_MESSAGES_PUBLISHED = Counter(
    "cryptolotto_stream_messages_published_total",
    "Messages published to Redis streams",
    ["stream"]
)
