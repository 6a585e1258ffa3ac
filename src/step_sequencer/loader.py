# loader.py
# Program persistence. Only the authored hierarchy is stored; runtime step
# status is excluded from serialization and always starts as not_started.

from pathlib import Path

from pydantic import ValidationError

from step_sequencer.models import Program


class ProgramLoadError(Exception):
    """Raised when a program file cannot be read or does not match the schema."""


def load_program(path: str | Path) -> Program:
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ProgramLoadError(f"Cannot read program file {path}: {exc}") from exc

    try:
        return Program.model_validate_json(raw)
    except ValidationError as exc:
        raise ProgramLoadError(f"Program file {path} is invalid:\n{exc}") from exc


def save_program(program: Program, path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(program.model_dump_json(indent=2), encoding="utf-8")
    return path
