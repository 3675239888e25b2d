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
Models for provisioning recipes.

A recipe is an ordered list of steps drawn from a small closed set:
select a base, set the working directory, install packages and declare
the default command.
"""
import posixpath
import re
from typing import Annotated, Literal, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..errors import ValidationError
from ..REGISTRY.image_reference import ImageReference

PACKAGE_NAME = re.compile(r"^[a-z0-9][a-z0-9+.\-]+(=[A-Za-z0-9.+:~\-]+)?$")


class SelectBase(BaseModel):
    """
    Selects the base artifact the recipe builds upon.
    """
    model_config = ConfigDict(frozen=True)

    kind: Literal["select_base"] = "select_base"
    reference: str

    @field_validator("reference")
    @classmethod
    def _valid_reference(cls, value: str) -> str:
        value = value.strip()
        ImageReference.parse(value)
        return value


class SetWorkdir(BaseModel):
    """
    Sets (and creates) the default directory for the container process.
    """
    model_config = ConfigDict(frozen=True)

    kind: Literal["set_workdir"] = "set_workdir"
    path: str

    @field_validator("path")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("working directory must not be empty")
        return value

    def resolve(self, current: str = "/") -> str:
        """
        Resolves the path against the current working directory.

        :param current: Working directory in effect before this step.
        :return: Normalized absolute path.
        """
        return posixpath.normpath(posixpath.join(current, self.path))


class InstallPackages(BaseModel):
    """
    Installs an ordered package set in one step, leaving no package-manager
    index files behind.
    """
    model_config = ConfigDict(frozen=True)

    kind: Literal["install_packages"] = "install_packages"
    packages: Tuple[str, ...] = ()

    @field_validator("packages")
    @classmethod
    def _check_names(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        seen = []
        for name in value:
            if not PACKAGE_NAME.match(name):
                raise ValueError(f"invalid package name: {name!r}")
            if name not in seen:
                seen.append(name)
        return tuple(seen)


class SetDefaultCommand(BaseModel):
    """
    Declares the program run when a container starts without an override.
    Recorded as metadata only.
    """
    model_config = ConfigDict(frozen=True)

    kind: Literal["set_default_command"] = "set_default_command"
    argv: Tuple[str, ...]

    @field_validator("argv")
    @classmethod
    def _non_empty(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        if not value or not value[0].strip():
            raise ValueError("default command must name an executable")
        return value


Step = Annotated[
    Union[SelectBase, SetWorkdir, InstallPackages, SetDefaultCommand],
    Field(discriminator="kind"),
]


class Recipe(BaseModel):
    """
    An ordered, validated list of provisioning steps.
    """
    model_config = ConfigDict(frozen=True)

    steps: Tuple[Step, ...]

    @model_validator(mode="after")
    def _check_order(self) -> "Recipe":
        steps = self.steps
        if not steps or not isinstance(steps[0], SelectBase):
            raise ValidationError("recipe must start by selecting a base")
        if not isinstance(steps[-1], SetDefaultCommand):
            raise ValidationError("recipe must end with a default command")
        if sum(isinstance(s, SelectBase) for s in steps) != 1:
            raise ValidationError("recipe must select exactly one base")
        if sum(isinstance(s, SetDefaultCommand) for s in steps) != 1:
            raise ValidationError("recipe must declare exactly one default command")
        return self

    @property
    def base(self) -> SelectBase:
        return self.steps[0]

    @property
    def default_command(self) -> Tuple[str, ...]:
        return self.steps[-1].argv

    def working_directory(self, start: str = "/") -> str:
        """
        Effective working directory after all workdir steps, starting from
        the base image's own working directory.
        """
        current = start
        for step in self.steps:
            if isinstance(step, SetWorkdir):
                current = step.resolve(current)
        return current
