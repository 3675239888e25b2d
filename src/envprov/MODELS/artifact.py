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
Models describing the outcome of a provisioning run.
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .recipe import Recipe


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class LayerState(BaseModel):
    """
    Backend state after a step: the layer it produced and the image
    configuration accumulated so far.
    """
    model_config = ConfigDict(frozen=True)

    layer_id: str
    working_dir: str = "/"
    entrypoint: Tuple[str, ...] = ()
    default_command: Tuple[str, ...] = ()
    packages: Tuple[str, ...] = ()
    base_digest: str = ""


class StepRecord(BaseModel):
    """
    Bookkeeping for one executed (or cache-restored) step.
    """
    kind: str
    cache_key: str
    layer_id: str = ""
    cached: bool = False
    duration: float = 0.0


class Artifact(BaseModel):
    """
    An immutable, addressable image produced by provisioning.
    """
    model_config = ConfigDict(frozen=True)

    artifact_id: str
    tags: Tuple[str, ...] = ()
    base_reference: str
    base_digest: str = ""
    working_dir: str
    default_command: Tuple[str, ...]
    packages: Tuple[str, ...] = ()
    cache_key: str
    created_at: str = Field(default_factory=_utcnow)

    def behaviour(self) -> Dict[str, object]:
        """
        The properties two builds of one recipe must share.
        """
        return {
            "base_reference": self.base_reference,
            "working_dir": self.working_dir,
            "default_command": list(self.default_command),
            "packages": list(self.packages),
        }


class BuildResult(BaseModel):
    """
    Result of provisioning one recipe.
    """
    name: str = ""
    recipe: Optional[Recipe] = None
    artifact: Optional[Artifact] = None
    steps: List[StepRecord] = []
    error: Optional[str] = None
    failed_step: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.artifact is not None

    @property
    def cache_hits(self) -> int:
        return sum(1 for s in self.steps if s.cached)
