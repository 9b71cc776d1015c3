from .redis_streams import (
    RedisStreamClient,
    STREAM_ROUNDS_CREATED,
    STREAM_ROUNDS_DRAWN,
    STREAM_TICKETS_ISSUED,
)
from .config import Settings
from .database import Database, Base
from .health import create_health_router
from .logging_config import configure_logging
from .telemetry import setup_telemetry, instrument_fastapi, get_tracer
from .rounds import RoundManager, DrawResult
from .tickets import TicketIssuer
from .stats import StatsAggregator, LotteryStats
from . import metrics

__all__ = [
    "RedisStreamClient",
    "STREAM_ROUNDS_CREATED",
    "STREAM_ROUNDS_DRAWN",
    "STREAM_TICKETS_ISSUED",
    "Settings",
    "Database",
    "Base",
    "create_health_router",
    "configure_logging",
    "setup_telemetry",
    "instrument_fastapi",
    "get_tracer",
    "RoundManager",
    "DrawResult",
    "TicketIssuer",
    "StatsAggregator",
    "LotteryStats",
    "metrics",
]
