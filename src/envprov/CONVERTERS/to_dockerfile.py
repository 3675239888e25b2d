# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Converter for writing recipes back out as canonical Dockerfiles.
"""
import json
import os

from jinja2 import Environment

from ..MODELS.recipe import Recipe

DOCKERFILE_TEMPLATE = """\
{% for step in steps %}
{% if step.kind == 'select_base' %}
FROM {{ step.reference }}
{% elif step.kind == 'set_workdir' %}

WORKDIR {{ step.path }}
{% elif step.kind == 'install_packages' %}

{% if comment %}
# {{ comment }}
{% endif %}
RUN apt-get update && apt-get install -y --no-install-recommends \\
{% for package in step.packages %}
    {{ package }} \\
{% endfor %}
    && rm -rf /var/lib/apt/lists/*
{% elif step.kind == 'set_default_command' %}

CMD {{ step.argv | exec_form }}
{% endif %}
{% endfor %}
"""


def exec_form(argv) -> str:
    return json.dumps(list(argv))


class DockerfileRenderer:
    """
    Renders a Recipe as Dockerfile text that parses back to the same recipe.
    """

    def __init__(self, comment: str = "Minimal packages"):
        """
        Initializes the renderer.

        :param comment: Comment placed above each installation step.
        """
        self.comment = comment
        env = Environment(trim_blocks=True, lstrip_blocks=True, keep_trailing_newline=True, autoescape=False)
        env.filters["exec_form"] = exec_form
        self.template = env.from_string(DOCKERFILE_TEMPLATE)

    def render(self, recipe: Recipe) -> str:
        """
        :param recipe: Recipe to render.
        :return: Dockerfile text.
        """
        return self.template.render(steps=recipe.steps, comment=self.comment)

    def write(self, recipe: Recipe, output_path: str) -> str:
        """
        Writes the rendered recipe to output_path.

        :return: The path written.
        """
        directory = os.path.dirname(output_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(output_path, "w") as f:
            f.write(self.render(recipe))
        return output_path
