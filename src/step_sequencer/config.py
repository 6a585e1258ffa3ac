# config.py
# Engine settings. Values come from the environment (optionally via a .env
# file) with the SEQUENCER_ prefix, e.g. SEQUENCER_POLL_INTERVAL_S=0.25.

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from step_sequencer.models import Framework

ENV_PREFIX = "SEQUENCER_"


class EngineConfig(BaseModel):
    poll_interval_s: float = Field(default=0.5, gt=0, description="Sub-state and wait-step poll period.")
    substate_timeout_s: float = Field(default=30.0, gt=0, description="Warn after this long in a sub-state wait.")
    condition_poll_interval_s: float = Field(default=0.1, gt=0, description="Script condition poll period.")
    log_level: str = "INFO"
    framework: Framework | None = Field(default=None, description="Overrides framework detection.")
    program_path: str | None = None


def load_config(environ: dict[str, str] | None = None, dotenv: bool = True) -> EngineConfig:
    """Build an EngineConfig from SEQUENCER_* variables. Unset values keep their defaults."""
    if dotenv:
        load_dotenv()
    env = os.environ if environ is None else environ

    values: dict[str, str] = {}
    for name in EngineConfig.model_fields:
        raw = env.get(ENV_PREFIX + name.upper())
        if raw not in (None, ""):
            values[name] = raw
    return EngineConfig.model_validate(values)
