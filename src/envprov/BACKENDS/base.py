"""
Interface between the provisioner and the build tool that materializes
filesystem layers.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence

from ..MODELS.artifact import LayerState


@dataclass(frozen=True)
class BuildContext:
    """
    Identifies one provisioning run to the backend.
    """
    build_id: str
    name: str = ""


@dataclass
class RunResult:
    """
    Outcome of instantiating an artifact once.
    """
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class BuildBackend(ABC):
    """
    Executes recipe steps. Every step method takes the state left by the
    previous step and returns a new one; states are never modified.

    Implementations raise the provisioning errors: ResolutionError from
    resolve_base, FilesystemError from set_workdir, InstallationError from
    install_packages and BackendError for anything else.
    """

    @abstractmethod
    def resolve_base(self, ctx: BuildContext, reference: str, pull: bool = False) -> LayerState:
        """Fetch (if needed) and inspect the base artifact."""

    @abstractmethod
    def set_workdir(self, ctx: BuildContext, state: LayerState, path: str) -> LayerState:
        """Create path, check it is writable and make it the default directory."""

    @abstractmethod
    def install_packages(self, ctx: BuildContext, state: LayerState, packages: Sequence[str]) -> LayerState:
        """Refresh the index, install packages and purge the index, as one layer."""

    @abstractmethod
    def set_default_command(self, ctx: BuildContext, state: LayerState, argv: Sequence[str]) -> LayerState:
        """Record argv as the default command without running it."""

    @abstractmethod
    def has_layer(self, layer_id: str) -> bool:
        """Whether a cached layer still exists in the backend."""

    @abstractmethod
    def tag(self, ctx: BuildContext, state: LayerState, tags: List[str]) -> str:
        """Publish the final state under tags and return its artifact id."""

    @abstractmethod
    def discard(self, ctx: BuildContext, state: Optional[LayerState]) -> None:
        """Drop anything a failed build left behind."""

    @abstractmethod
    def run(self, image: str, argv: Sequence[str], entrypoint: Optional[str] = None) -> RunResult:
        """Instantiate image once with argv and wait for it to exit."""
