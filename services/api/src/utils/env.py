"""Typed access to environment variables.

Each variable is declared once as an :class:`EnvVarSpec`; ``parse`` reads and
converts it, ``validate`` checks a batch at startup and logs every problem.
"""

import logging
import os
from typing import Any, Callable, Iterable, Optional, Tuple

from pydantic import BaseModel, ValidationError, create_model

logger = logging.getLogger(__name__)


class EnvVarSpec(BaseModel):
    id: str
    default: Optional[str] = None
    parse: Callable[[str], Any] = lambda x: x
    type: Tuple[Any, Any] = (str, ...)
    is_optional: bool = False
    is_secret: bool = False


def _raw(spec: EnvVarSpec) -> Optional[str]:
    value = os.environ.get(spec.id)
    if value is None or value == "":
        return spec.default
    return value


def parse(spec: EnvVarSpec) -> Any:
    value = _raw(spec)
    if value is None:
        if spec.is_optional:
            return None
        raise ValueError(f"Environment variable {spec.id} is not set")
    return spec.parse(value)


def validate(specs: Iterable[EnvVarSpec]) -> bool:
    ok = True
    for spec in specs:
        value = _raw(spec)
        if value is None:
            if not spec.is_optional:
                logger.error(f"Missing required environment variable {spec.id}")
                ok = False
            continue
        shown = "***" if spec.is_secret else value
        try:
            parsed = spec.parse(value)
            create_model(spec.id, value=spec.type)(value=parsed)
        except (ValueError, TypeError, ValidationError) as e:
            logger.error(f"Invalid value for {spec.id}: {shown!r} ({e})")
            ok = False
    return ok
