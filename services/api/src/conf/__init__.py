from pydantic import BaseModel

from models.operations.policy import RescuePolicy
from utils import env, log
from utils.env import EnvVarSpec

logger = log.get_logger(__name__)

#### Types ####

class HttpServerConf(BaseModel):
    host: str
    port: int
    autoreload: bool

#### Env Vars ####

def _parse_bool(x: str) -> bool:
    return x.lower() == "true"

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

## Matching ##

MATCH_RADIUS_M = EnvVarSpec(id="MATCH_RADIUS_M", default="7000", parse=float, type=(float, ...))

MATCH_MAX_CANDIDATES = EnvVarSpec(id="MATCH_MAX_CANDIDATES", default="10", parse=int, type=(int, ...))

MATCH_FALLBACK_DELAY_S = EnvVarSpec(id="MATCH_FALLBACK_DELAY_S", default="60", parse=int, type=(int, ...))

# Schedule the self-pickup fallback even when no courier was found nearby
MATCH_FALLBACK_WHEN_NO_CANDIDATES = EnvVarSpec(
    id="MATCH_FALLBACK_WHEN_NO_CANDIDATES",
    default="true",
    parse=_parse_bool,
    type=(bool, ...),
)

MAX_COURIER_MATCH_ATTEMPTS = EnvVarSpec(id="MAX_COURIER_MATCH_ATTEMPTS", default="3", parse=int, type=(int, ...))

FALLBACK_SWEEP_INTERVAL_S = EnvVarSpec(id="FALLBACK_SWEEP_INTERVAL_S", default="15", parse=int, type=(int, ...))

## Cancellation ##

CANCEL_LIMIT_PER_WINDOW = EnvVarSpec(id="CANCEL_LIMIT_PER_WINDOW", default="3", parse=int, type=(int, ...))

BUYER_CANCEL_CUTOFF_MIN = EnvVarSpec(id="BUYER_CANCEL_CUTOFF_MIN", default="30", parse=int, type=(int, ...))

#### Validation ####
VALIDATED_ENV_VARS = [
    HTTP_AUTORELOAD,
    HTTP_EXPOSE_ERRORS,
    HTTP_PORT,
    LOG_LEVEL,
    MATCH_RADIUS_M,
    MATCH_MAX_CANDIDATES,
    MATCH_FALLBACK_DELAY_S,
    MATCH_FALLBACK_WHEN_NO_CANDIDATES,
    MAX_COURIER_MATCH_ATTEMPTS,
    FALLBACK_SWEEP_INTERVAL_S,
    CANCEL_LIMIT_PER_WINDOW,
    BUYER_CANCEL_CUTOFF_MIN,
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

def get_fallback_sweep_interval_s() -> int:
    return max(1, env.parse(FALLBACK_SWEEP_INTERVAL_S))

def get_rescue_policy() -> RescuePolicy:
    return RescuePolicy(
        match_radius_m=env.parse(MATCH_RADIUS_M),
        match_max_candidates=env.parse(MATCH_MAX_CANDIDATES),
        match_fallback_delay_s=env.parse(MATCH_FALLBACK_DELAY_S),
        fallback_when_no_candidates=env.parse(MATCH_FALLBACK_WHEN_NO_CANDIDATES),
        max_courier_match_attempts=env.parse(MAX_COURIER_MATCH_ATTEMPTS),
        cancel_limit=env.parse(CANCEL_LIMIT_PER_WINDOW),
        buyer_cancel_cutoff_minutes=env.parse(BUYER_CANCEL_CUTOFF_MIN),
    )
