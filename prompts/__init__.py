"""Prompt templates shipped with the pipeline.

Each ``<name>.txt`` file in this package is a ``string.Template``. The
classifier fills in ``$event_types`` so the prompt and the accepted event
types cannot drift apart.
"""
import functools
import string
import typing as t
from pathlib import Path

PROMPTS_DIR = Path(__file__).resolve().parent
PROMPT_SUFFIX = ".txt"


class PromptNotFoundError(FileNotFoundError):
    pass


def available_prompts(prompts_dir: t.Optional[Path] = None) -> list[str]:
    """Names of the prompt templates in ``prompts_dir``."""
    directory = Path(prompts_dir or PROMPTS_DIR)
    return sorted(path.stem for path in directory.glob(f"*{PROMPT_SUFFIX}"))


@functools.lru_cache(maxsize=None)
def _template(path: Path) -> string.Template:
    return string.Template(path.read_text(encoding="utf-8"))


def render_prompt(name: str, prompts_dir: t.Optional[Path] = None, **values: t.Any) -> str:
    """
    Render a prompt template.

    Args:
        name: Template name, without the .txt suffix
        prompts_dir: Directory to load from; defaults to this package
        **values: Substitutions for the template's ``$placeholders``

    Raises:
        PromptNotFoundError: If no template has that name
        ValueError: If the template uses a placeholder not given in values
    """
    directory = Path(prompts_dir or PROMPTS_DIR)
    path = directory / f"{name}{PROMPT_SUFFIX}"
    if not path.is_file():
        known = ", ".join(available_prompts(directory)) or "none"
        raise PromptNotFoundError(f"Prompt {name!r} not found in {directory} (available: {known})")
    try:
        return _template(path).substitute(values)
    except KeyError as e:
        raise ValueError(f"Prompt {name!r} needs a value for {e.args[0]!r}") from e
