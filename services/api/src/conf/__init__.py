from pydantic import BaseModel

from utils import env, log
from utils.env import EnvVarSpec

logger = log.get_logger(__name__)

#### Types ####

class HttpServerConf(BaseModel):
    host: str
    port: int
    autoreload: bool

class SchedulerConf(BaseModel):
    enabled: bool
    close_interval_seconds: int
    bid_sync_interval_seconds: int

#### Env Vars ####

## Logging ##

LOG_LEVEL = EnvVarSpec(id="LOG_LEVEL", default="INFO")

## HTTP ##

HTTP_HOST = EnvVarSpec(id="HTTP_HOST", default="0.0.0.0")

HTTP_PORT = EnvVarSpec(id="HTTP_PORT", default="8000", parse=int, type=(int, ...))

HTTP_AUTORELOAD = EnvVarSpec(
    id="HTTP_AUTORELOAD",
    parse=lambda x: x.lower() == "true",
    default="false",
    type=(bool, ...),
)

HTTP_EXPOSE_ERRORS = EnvVarSpec(
    id="HTTP_EXPOSE_ERRORS",
    default="false",
    parse=lambda x: x.lower() == "true",
    type=(bool, ...),
)

## Auction scheduler ##

SCHEDULER_ENABLED = EnvVarSpec(
    id="SCHEDULER_ENABLED",
    default="true",
    parse=lambda x: x.lower() == "true",
    type=(bool, ...),
)

AUCTION_CLOSE_INTERVAL_SECONDS = EnvVarSpec(
    id="AUCTION_CLOSE_INTERVAL_SECONDS",
    default="60",
    parse=int,
    type=(int, ...),
)

BID_SYNC_INTERVAL_SECONDS = EnvVarSpec(
    id="BID_SYNC_INTERVAL_SECONDS",
    default="300",
    parse=int,
    type=(int, ...),
)

#### Validation ####
VALIDATED_ENV_VARS = [
    HTTP_AUTORELOAD,
    HTTP_EXPOSE_ERRORS,
    HTTP_PORT,
    LOG_LEVEL,
    SCHEDULER_ENABLED,
    AUCTION_CLOSE_INTERVAL_SECONDS,
    BID_SYNC_INTERVAL_SECONDS,
]

def validate() -> bool:
    return env.validate(VALIDATED_ENV_VARS)

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

def get_scheduler_conf() -> SchedulerConf:
    return SchedulerConf(
        enabled=env.parse(SCHEDULER_ENABLED),
        close_interval_seconds=max(1, env.parse(AUCTION_CLOSE_INTERVAL_SECONDS)),
        bid_sync_interval_seconds=max(1, env.parse(BID_SYNC_INTERVAL_SECONDS)),
    )
