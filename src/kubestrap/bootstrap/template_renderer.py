# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from jinja2 import DictLoader, Environment, StrictUndefined
from typing import Mapping
import os
import re

def expand_env_vars(value: str) -> str:
    return re.sub(r"\$\{([^}^{]+)\}", lambda m: os.getenv(m.group(1), m.group(0)), value)

class TemplateRenderer:
    """
    Renders named shell/config templates held in memory.
    Missing variables are an error rather than an empty string.
    """

    def __init__(self, templates: Mapping[str, str]):
        self.env = Environment(
            loader=DictLoader(dict(templates)),
            autoescape=False,
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )

    def render(self, template_name: str, context: dict) -> str:
        expanded = {k: expand_env_vars(v) if isinstance(v, str) else v for k, v in context.items()}
        tmpl = self.env.get_template(template_name)
        return tmpl.render(**expanded)
