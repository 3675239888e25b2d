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
Error taxonomy for provisioning.

Every error aborts the build. Each one records which step failed so the
command line can print a diagnostic naming it.
"""

from typing import Optional


class ProvisionError(Exception):
    """Base class for all provisioning failures."""

    retryable = False

    def __init__(self, message: str, step: Optional[str] = None, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.step = step
        self.hint = hint

    def __str__(self) -> str:
        text = f"{self.step}: {self.message}" if self.step else self.message
        if self.hint:
            text += f"\nHint: {self.hint}"
        return text


class ValidationError(ProvisionError):
    """The recipe is malformed."""

    def __init__(self, message: str, line: Optional[int] = None, hint: Optional[str] = None):
        super().__init__(message, step="validate", hint=hint)
        self.line = line

    def __str__(self) -> str:
        text = super().__str__()
        if self.line is not None:
            text = f"line {self.line}: {text}"
        return text


class ResolutionError(ProvisionError):
    """The base artifact reference cannot be fetched or does not exist."""

    retryable = True


class InstallationError(ProvisionError):
    """A package in the package set could not be installed."""

    retryable = True


class FilesystemError(ProvisionError):
    """The working directory could not be created or is not writable."""


class BackendError(ProvisionError):
    """The build tool failed for a reason outside the other categories."""

    retryable = True
