from pydantic import BaseModel

from utils import env, log
from utils.env import EnvVarSpec

logger = log.get_logger(__name__)

#### Types ####

class HttpServerConf(BaseModel):
    host: str
    port: int
    autoreload: bool

class AuctionConf(BaseModel):
    extension_window_seconds: int
    bid_max_retries: int

class SweeperConf(BaseModel):
    enabled: bool
    sweep_interval_seconds: int
    order_retry_interval_seconds: int
    order_retry_grace_seconds: int
    archive_retention_days: int
    archive_hour_utc: int

def _parse_bool(x: str) -> bool:
    return x.lower() == "true"

#### Env Vars ####

## Logging ##

LOG_LEVEL = EnvVarSpec(id="LOG_LEVEL", default="INFO")

## HTTP ##

HTTP_HOST = EnvVarSpec(id="HTTP_HOST", default="0.0.0.0")

HTTP_PORT = EnvVarSpec(id="HTTP_PORT", default="8000", parse=int, type=(int, ...))

HTTP_AUTORELOAD = EnvVarSpec(
    id="HTTP_AUTORELOAD",
    parse=_parse_bool,
    default="false",
    type=(bool, ...),
)

HTTP_EXPOSE_ERRORS = EnvVarSpec(
    id="HTTP_EXPOSE_ERRORS",
    default="false",
    parse=_parse_bool,
    type=(bool, ...),
)

## Auctions ##

AUCTION_EXTENSION_WINDOW_SECONDS = EnvVarSpec(
    id="AUCTION_EXTENSION_WINDOW_SECONDS",
    default="120",
    parse=int,
    type=(int, ...),
)

AUCTION_BID_MAX_RETRIES = EnvVarSpec(
    id="AUCTION_BID_MAX_RETRIES",
    default="5",
    parse=int,
    type=(int, ...),
)

## Sweeper ##

AUCTION_SCHEDULER_ENABLED = EnvVarSpec(
    id="AUCTION_SCHEDULER_ENABLED",
    default="true",
    parse=_parse_bool,
    type=(bool, ...),
)

AUCTION_SWEEP_INTERVAL_SECONDS = EnvVarSpec(
    id="AUCTION_SWEEP_INTERVAL_SECONDS",
    default="60",
    parse=int,
    type=(int, ...),
)

AUCTION_ORDER_RETRY_INTERVAL_SECONDS = EnvVarSpec(
    id="AUCTION_ORDER_RETRY_INTERVAL_SECONDS",
    default="120",
    parse=int,
    type=(int, ...),
)

AUCTION_ORDER_RETRY_GRACE_SECONDS = EnvVarSpec(
    id="AUCTION_ORDER_RETRY_GRACE_SECONDS",
    default="120",
    parse=int,
    type=(int, ...),
)

AUCTION_ARCHIVE_RETENTION_DAYS = EnvVarSpec(
    id="AUCTION_ARCHIVE_RETENTION_DAYS",
    default="30",
    parse=int,
    type=(int, ...),
)

AUCTION_ARCHIVE_HOUR_UTC = EnvVarSpec(
    id="AUCTION_ARCHIVE_HOUR_UTC",
    default="0",
    parse=int,
    type=(int, ...),
)

#### Validation ####
VALIDATED_ENV_VARS = [
    HTTP_AUTORELOAD,
    HTTP_EXPOSE_ERRORS,
    HTTP_PORT,
    LOG_LEVEL,
    AUCTION_EXTENSION_WINDOW_SECONDS,
    AUCTION_BID_MAX_RETRIES,
    AUCTION_SCHEDULER_ENABLED,
    AUCTION_SWEEP_INTERVAL_SECONDS,
    AUCTION_ORDER_RETRY_INTERVAL_SECONDS,
    AUCTION_ORDER_RETRY_GRACE_SECONDS,
    AUCTION_ARCHIVE_RETENTION_DAYS,
    AUCTION_ARCHIVE_HOUR_UTC,
]

def validate() -> bool:
    if not env.validate(VALIDATED_ENV_VARS):
        return False
    hour = env.parse(AUCTION_ARCHIVE_HOUR_UTC)
    if not 0 <= hour <= 23:
        logger.error(f"AUCTION_ARCHIVE_HOUR_UTC must be between 0 and 23, got {hour}")
        return False
    return True

#### Getters ####

def get_http_expose_errors() -> bool:
    return env.parse(HTTP_EXPOSE_ERRORS)

def get_log_level() -> str:
    return env.parse(LOG_LEVEL)

def get_http_conf() -> HttpServerConf:
    return HttpServerConf(
        host=env.parse(HTTP_HOST),
        port=env.parse(HTTP_PORT),
        autoreload=env.parse(HTTP_AUTORELOAD),
    )

def get_auction_conf() -> AuctionConf:
    return AuctionConf(
        extension_window_seconds=max(1, env.parse(AUCTION_EXTENSION_WINDOW_SECONDS)),
        bid_max_retries=max(0, env.parse(AUCTION_BID_MAX_RETRIES)),
    )

def get_sweeper_conf() -> SweeperConf:
    return SweeperConf(
        enabled=env.parse(AUCTION_SCHEDULER_ENABLED),
        sweep_interval_seconds=max(1, env.parse(AUCTION_SWEEP_INTERVAL_SECONDS)),
        order_retry_interval_seconds=max(1, env.parse(AUCTION_ORDER_RETRY_INTERVAL_SECONDS)),
        order_retry_grace_seconds=max(0, env.parse(AUCTION_ORDER_RETRY_GRACE_SECONDS)),
        archive_retention_days=max(0, env.parse(AUCTION_ARCHIVE_RETENTION_DAYS)),
        archive_hour_utc=env.parse(AUCTION_ARCHIVE_HOUR_UTC),
    )
