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
Turns parsed recipe directives into a validated Recipe.

Only four directives are accepted: FROM, WORKDIR, RUN and CMD. A RUN line
must be a package installation of the form

    apt-get update && apt-get install -y --no-install-recommends <pkgs> \\
        && rm -rf /var/lib/apt/lists/*

so that the package set can be recovered and the index purge checked.
"""
import shlex
from typing import List, Optional, Tuple

import pydantic

from ..errors import ValidationError
from ..MODELS.dockerfile_ast import Instruction
from ..MODELS.recipe import (
    InstallPackages,
    Recipe,
    SelectBase,
    SetDefaultCommand,
    SetWorkdir,
)
from .dockerfile_parser import DockerfileParser

SUPPORTED = ("FROM", "WORKDIR", "RUN", "CMD")
APT_LISTS = "/var/lib/apt/lists"
INSTALL_FLAGS = {"-y", "--yes", "-q", "-qq", "--quiet", "--no-install-recommends", "--no-install-suggests"}


class RecipeParser:
    """
    Parser for provisioning recipes.
    """
    def __init__(self):
        self.parser = DockerfileParser()

    def parse(self, recipe_path: str) -> Recipe:
        """
        Parses a recipe from a file path.

        :param recipe_path: Path to the recipe file.
        :return: Validated recipe.
        :raises ValidationError: If the recipe is malformed.
        """
        return self.from_instructions(self.parser.parse(recipe_path))

    def parse_from_string(self, content: str) -> Recipe:
        """
        Parses a recipe from its text.

        :param content: Recipe text.
        :return: Validated recipe.
        :raises ValidationError: If the recipe is malformed.
        """
        return self.from_instructions(self.parser.parse_from_string(content))

    def from_instructions(self, instructions: List[Instruction]) -> Recipe:
        """
        Converts directives into recipe steps, checking order and arity.
        """
        steps = []
        seen_from: Optional[Instruction] = None
        seen_cmd: Optional[Instruction] = None

        for inst in instructions:
            if inst.instruction not in SUPPORTED:
                raise ValidationError(
                    f"unsupported directive {inst.instruction or inst.raw!r}",
                    line=inst.line,
                    hint=f"supported directives are {', '.join(SUPPORTED)}",
                )
            if inst.instruction != "FROM" and seen_from is None:
                raise ValidationError(f"{inst.instruction} before FROM", line=inst.line)
            if seen_cmd is not None:
                raise ValidationError(f"{inst.instruction} after CMD", line=inst.line,
                                      hint="the default command must be the last directive")

            if inst.instruction == "FROM":
                if seen_from is not None:
                    raise ValidationError("multiple FROM directives", line=inst.line,
                                          hint="multi-stage recipes are not supported")
                seen_from = inst
                steps.append(self._step(SelectBase, inst, reference=self._base_reference(inst)))
            elif inst.instruction == "WORKDIR":
                steps.append(self._step(SetWorkdir, inst, path=self._single_argument(inst)))
            elif inst.instruction == "RUN":
                steps.append(self._step(InstallPackages, inst, packages=self.parse_install(inst)))
            elif inst.instruction == "CMD":
                seen_cmd = inst
                steps.append(self._step(SetDefaultCommand, inst, argv=self._command(inst)))

        if seen_from is None:
            raise ValidationError("recipe has no FROM directive")
        if seen_cmd is None:
            raise ValidationError("recipe has no CMD directive")

        return Recipe(steps=tuple(steps))

    def parse_install(self, inst: Instruction) -> Tuple[str, ...]:
        """
        Extracts the package list from a RUN installation expression.

        :param inst: The RUN directive.
        :return: Package names in declaration order.
        :raises ValidationError: If the expression is not an update, install
            and purge chain.
        """
        if inst.exec_form:
            raise ValidationError("RUN must use shell form", line=inst.line)
        text = self._single_argument(inst)

        try:
            segments = [shlex.split(part) for part in text.split("&&")]
        except ValueError as e:
            raise ValidationError(f"cannot tokenize RUN: {e}", line=inst.line)
        segments = [self._strip_assignments(s) for s in segments]
        if any(not s for s in segments):
            raise ValidationError("empty command in RUN chain", line=inst.line)

        updated = False
        installed = False
        purged = False
        packages: List[str] = []

        for tokens in segments:
            if tokens[:2] == ["apt-get", "update"]:
                if installed:
                    raise ValidationError("index refresh must come before installation", line=inst.line)
                updated = True
            elif tokens[:2] == ["apt-get", "install"]:
                if not updated:
                    raise ValidationError(
                        "package index is not refreshed before installing",
                        line=inst.line,
                        hint="start the chain with 'apt-get update'",
                    )
                flags = [t for t in tokens[2:] if t.startswith("-")]
                unknown = [f for f in flags if f not in INSTALL_FLAGS]
                if unknown:
                    raise ValidationError(f"unsupported install flag(s): {' '.join(unknown)}", line=inst.line)
                if "--no-install-recommends" not in flags:
                    raise ValidationError("installation must pass --no-install-recommends", line=inst.line)
                if not {"-y", "--yes"} & set(flags):
                    raise ValidationError("installation must be non-interactive (-y)", line=inst.line)
                packages.extend(t for t in tokens[2:] if not t.startswith("-"))
                installed = True
            elif tokens[:2] == ["apt-get", "clean"]:
                continue
            elif tokens[0] == "rm" and any(t.startswith(APT_LISTS) for t in tokens[1:]):
                if not installed:
                    raise ValidationError("index purge before installation", line=inst.line)
                purged = True
            else:
                raise ValidationError(
                    f"RUN only supports package installation, got {' '.join(tokens)!r}",
                    line=inst.line,
                )

        if not installed:
            raise ValidationError("RUN does not install packages", line=inst.line)
        if not purged:
            raise ValidationError(
                "package index is not purged in the same step",
                line=inst.line,
                hint=f"append '&& rm -rf {APT_LISTS}/*'",
            )
        return tuple(packages)

    def _base_reference(self, inst: Instruction) -> str:
        tokens = self._single_argument(inst).split()
        if any(t.startswith("--") for t in tokens):
            raise ValidationError("FROM flags are not supported", line=inst.line)
        if len(tokens) != 1:
            raise ValidationError("FROM takes exactly one reference", line=inst.line,
                                  hint="named build stages ('AS name') are not supported")
        return tokens[0]

    def _command(self, inst: Instruction) -> Tuple[str, ...]:
        if inst.exec_form:
            argv = tuple(inst.arguments)
        else:
            try:
                argv = tuple(shlex.split(self._single_argument(inst)))
            except ValueError as e:
                raise ValidationError(f"cannot tokenize CMD: {e}", line=inst.line)
        if not argv or not argv[0].strip():
            raise ValidationError("CMD is empty", line=inst.line)
        return argv

    def _single_argument(self, inst: Instruction) -> str:
        if len(inst.arguments) != 1 or not inst.arguments[0].strip():
            raise ValidationError(f"{inst.instruction} expects one argument", line=inst.line)
        return inst.arguments[0]

    @staticmethod
    def _strip_assignments(tokens: List[str]) -> List[str]:
        """Drops leading VAR=value assignments such as DEBIAN_FRONTEND."""
        i = 0
        while i < len(tokens) and "=" in tokens[i] and not tokens[i].startswith("-"):
            i += 1
        return tokens[i:]

    @staticmethod
    def _step(model, inst: Instruction, **fields):
        try:
            return model(**fields)
        except pydantic.ValidationError as e:
            message = "; ".join(err["msg"] for err in e.errors())
            raise ValidationError(message, line=inst.line)
