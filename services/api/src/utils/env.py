"""
Declarative environment variables.

Each ``EnvVarSpec`` names a variable, its default and how to parse it;
``validate`` checks a list of specs at startup and ``parse`` reads one.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from pydantic import ValidationError, create_model

logger = logging.getLogger(__name__)


def _identity(value: str) -> str:
    return value


@dataclass(frozen=True)
class EnvVarSpec:
    id: str
    default: Optional[str] = None
    parse: Callable[[str], Any] = _identity
    type: Any = (str, ...)
    is_optional: bool = False
    is_secret: bool = False


def _raw(spec: EnvVarSpec) -> Optional[str]:
    value = os.environ.get(spec.id)
    if value is None or value == "":
        return spec.default
    return value


def parse(spec: EnvVarSpec) -> Any:
    """Read and parse *spec*; ``None`` when unset and optional."""
    value = _raw(spec)
    if value is None:
        if spec.is_optional:
            return None
        raise ValueError(f"Environment variable {spec.id} is not set")
    return spec.parse(value)


def validate(specs: List[EnvVarSpec]) -> bool:
    """Check that every spec is present (unless optional) and parses to its type."""
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
            logger.error(f"Invalid value for {spec.id} ({shown}): {e}")
            ok = False
    return ok
