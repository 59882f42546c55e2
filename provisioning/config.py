import os
from typing import Optional

from attrs import define, field
from attrs.validators import ge, instance_of, optional

DEFAULT_MAX_CONCURRENCY = 4


def _optional_float(value: Optional[str]) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


@define(slots=True, frozen=True)
class EngineSettings:
    call_timeout: Optional[float] = field(
        default=None,
        validator=optional(instance_of((int, float))),
        metadata={"description": "Seconds allowed per provider call, None for no limit"},
    )
    max_concurrency: int = field(
        default=DEFAULT_MAX_CONCURRENCY,
        validator=[instance_of(int), ge(1)],
        metadata={"description": "Stacks provisioned at the same time"},
    )
    halt_on_failure: bool = field(
        default=False,
        validator=instance_of(bool),
        metadata={"description": "Stop starting new stacks after the first failure"},
    )
    log_level: str = field(default="INFO", converter=str.upper)

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            call_timeout=_optional_float(os.getenv("PROVISIONING_CALL_TIMEOUT")),
            max_concurrency=int(
                os.getenv("PROVISIONING_MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY)
            ),
            halt_on_failure=os.getenv("PROVISIONING_HALT_ON_FAILURE", "false").lower()
            in ("1", "true", "yes"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
