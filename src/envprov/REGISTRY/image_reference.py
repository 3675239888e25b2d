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
Base artifact reference parsing.
Normalizes references like 'gcc', 'gcc:13' or 'ghcr.io/org/gcc@sha256:...'
so that equal bases produce equal cache identities.
"""

import re
from typing import Optional
from dataclasses import dataclass

REPOSITORY_PART = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
TAG = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
DIGEST = re.compile(r"^[a-z0-9]+:[a-f0-9]{32,}$")


@dataclass(frozen=True)
class ImageReference:
    """
    Parsed base artifact reference.

    Examples:
        - gcc -> docker.io/library/gcc:latest
        - gcc:13 -> docker.io/library/gcc:13
        - myuser/toolchain:v1 -> docker.io/myuser/toolchain:v1
        - localhost:5000/gcc@sha256:abc... -> localhost:5000/gcc@sha256:abc...
    """

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    DEFAULT_REGISTRY = "docker.io"
    DEFAULT_TAG = "latest"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse a base artifact reference string.

        Args:
            reference: Reference string (e.g., 'gcc:latest', 'myuser/toolchain:v1')

        Returns:
            Parsed ImageReference object.

        Raises:
            ValueError: If the reference is empty or malformed.
        """
        if not reference or reference != reference.strip():
            raise ValueError(f"Invalid image reference: {reference!r}")

        digest = None
        if "@" in reference:
            reference, digest = reference.rsplit("@", 1)
            if not DIGEST.match(digest):
                raise ValueError(f"Invalid digest: {digest!r}")

        tag = None
        last_colon = reference.rfind(":")
        if last_colon != -1:
            after_colon = reference[last_colon + 1:]
            # A colon followed by a path is a registry port, not a tag
            if "/" not in after_colon:
                tag = after_colon
                reference = reference[:last_colon]
                if not TAG.match(tag):
                    raise ValueError(f"Invalid tag: {tag!r}")

        parts = reference.split("/")
        first_part = parts[0]
        if len(parts) > 1 and ("." in first_part or ":" in first_part or first_part == "localhost"):
            registry = first_part
            path = parts[1:]
        else:
            registry = cls.DEFAULT_REGISTRY
            path = parts

        if registry == cls.DEFAULT_REGISTRY and len(path) == 1:
            path = ["library"] + path

        for part in path:
            if not REPOSITORY_PART.match(part):
                raise ValueError(f"Invalid repository component: {part!r}")

        if not tag and not digest:
            tag = cls.DEFAULT_TAG

        return cls(registry=registry, repository="/".join(path), tag=tag, digest=digest)

    @property
    def full_name(self) -> str:
        """Get full reference with registry."""
        name = f"{self.registry}/{self.repository}"
        if self.tag:
            name = f"{name}:{self.tag}"
        if self.digest:
            name = f"{name}@{self.digest}"
        return name

    @property
    def short_name(self) -> str:
        """Get short reference (without registry if default)."""
        if self.registry != self.DEFAULT_REGISTRY:
            return self.full_name
        repo = self.repository
        if repo.startswith("library/"):
            repo = repo[len("library/"):]
        if self.tag:
            repo = f"{repo}:{self.tag}"
        if self.digest:
            repo = f"{repo}@{self.digest}"
        return repo

    @property
    def is_pinned(self) -> bool:
        """True when the reference names content rather than a movable tag."""
        return self.digest is not None

    def __str__(self) -> str:
        return self.short_name

    def __repr__(self) -> str:
        return f"ImageReference({self.full_name})"
