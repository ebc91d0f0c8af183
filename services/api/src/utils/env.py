"""
Typed environment variables.

Each variable is declared once as an ``EnvVarSpec``. ``parse`` reads and
converts a single variable on demand; ``validate`` checks a whole list at
startup and logs every problem before the service refuses to boot.
"""

import logging
import os
from typing import Any, Callable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError, create_model

logger = logging.getLogger(__name__)


class EnvVarSpec(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    id: str
    default: Optional[str] = None
    parse: Callable[[str], Any] = lambda x: x
    type: Tuple[Any, Any] = (str, ...)
    is_optional: bool = False
    is_secret: bool = False


class EnvVarError(ValueError):
    pass


def _raw(spec: EnvVarSpec) -> Optional[str]:
    value = os.environ.get(spec.id)
    if value is None or value == "":
        return spec.default
    return value


def parse(spec: EnvVarSpec) -> Any:
    """Read, convert and return a variable; raises EnvVarError if it is unusable."""
    raw = _raw(spec)
    if raw is None:
        if spec.is_optional:
            return None
        raise EnvVarError(f"Missing required environment variable {spec.id}")
    try:
        return spec.parse(raw)
    except (TypeError, ValueError) as e:
        raise EnvVarError(f"Invalid value for {spec.id}: {e}") from e


def validate(specs: List[EnvVarSpec]) -> bool:
    """Parse every spec and type-check the results with a pydantic model."""
    ok = True
    values = {}
    fields = {}
    for spec in specs:
        try:
            value = parse(spec)
        except EnvVarError as e:
            logger.error(str(e))
            ok = False
            continue
        if value is None and spec.is_optional:
            continue
        values[spec.id] = value
        fields[spec.id] = spec.type

    if not ok:
        return False

    model = create_model("EnvVars", **fields)
    try:
        model(**values)
    except ValidationError as e:
        for err in e.errors():
            name = err["loc"][0] if err["loc"] else "?"
            logger.error(f"Invalid value for {name}: {err['msg']}")
        return False
    return True
