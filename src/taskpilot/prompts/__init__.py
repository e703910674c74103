from __future__ import annotations

from functools import cache
from importlib import resources
from string import Template


@cache
def load_prompt(name: str) -> str:
    return resources.files("taskpilot.prompts").joinpath(name).read_text(encoding="utf-8").strip()


def render_prompt(name: str, **values: object) -> str:
    return Template(load_prompt(name)).substitute({key: str(value) for key, value in values.items()})
