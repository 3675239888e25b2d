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
Build backend driving the docker command line.

Each filesystem step runs in a throwaway container that is committed to a
new image; the image id is the layer id. The image configuration (working
directory, entrypoint, default command) is re-applied on every commit so
that the helper command used to run a step never leaks into the layer.
"""
import json
import logging
import re
import shlex
import subprocess
import uuid
from typing import List, Optional, Sequence

from ..errors import BackendError, FilesystemError, InstallationError, ResolutionError
from ..MODELS.artifact import LayerState
from .base import BuildBackend, BuildContext, RunResult

logger = logging.getLogger(__name__)

CONTAINER_PREFIX = "envprov-"
APT_LISTS = "/var/lib/apt/lists"
MISSING_PACKAGE = re.compile(r"Unable to locate package (\S+)")
DAEMON_DOWN = ("Cannot connect to the Docker daemon", "error during connect")

WORKDIR_SCRIPT = 'mkdir -p -- "$1" && test -d "$1" && test -w "$1"'


def install_script(packages: Sequence[str]) -> str:
    """
    Shell chain for one atomic installation step. The frontend variable is
    set for apt-get alone so that it is not recorded in the image.
    """
    install = ["apt-get", "install", "-y", "--no-install-recommends", *packages]
    return " && ".join([
        "apt-get update",
        "DEBIAN_FRONTEND=noninteractive " + " ".join(shlex.quote(t) for t in install),
        f"rm -rf {APT_LISTS}/*",
    ])


class DockerCliBackend(BuildBackend):
    """
    Executes recipe steps with the docker binary.
    """

    def __init__(self, docker_bin: str = "docker", timeout: Optional[float] = 600):
        """
        Args:
            docker_bin: Name or path of the docker executable.
            timeout: Seconds any single docker command may take.
        """
        self.docker_bin = docker_bin
        self.timeout = timeout

    def _docker(self, args: List[str], error=BackendError, step: str = "docker") -> subprocess.CompletedProcess:
        command = [self.docker_bin] + args
        logger.debug("Running: %s", " ".join(shlex.quote(c) for c in command))
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                # Avoid shell=True, arguments come from recipes
                shell=False,
            )
        except FileNotFoundError:
            raise BackendError(f"docker executable {self.docker_bin!r} not found", step=step,
                               hint="install docker or set ENVPROV_DOCKER_BIN")
        except subprocess.TimeoutExpired:
            raise BackendError(f"'{' '.join(args[:2])}' timed out after {self.timeout}s", step=step)

        if result.returncode != 0:
            stderr = result.stderr.strip()
            if any(marker in stderr for marker in DAEMON_DOWN):
                error = BackendError
            raise error(stderr.splitlines()[-1] if stderr else f"docker exited with {result.returncode}",
                        step=step)
        return result

    def _inspect(self, image: str) -> Optional[dict]:
        try:
            result = self._docker(["image", "inspect", image], step="inspect")
        except BackendError as e:
            if "No such image" in e.message or "no such image" in e.message:
                return None
            raise
        data = json.loads(result.stdout)
        return data[0] if data else None

    def resolve_base(self, ctx: BuildContext, reference: str, pull: bool = False) -> LayerState:
        info = None if pull else self._inspect(reference)
        if info is None:
            logger.info("[%s] Pulling %s", ctx.name or ctx.build_id, reference)
            self._docker(["pull", reference], error=ResolutionError, step="resolve_base")
            info = self._inspect(reference)
            if info is None:
                raise ResolutionError(f"{reference} not present after pull", step="resolve_base")

        config = info.get("Config") or {}
        digests = info.get("RepoDigests") or []
        return LayerState(
            layer_id=info["Id"],
            working_dir=config.get("WorkingDir") or "/",
            entrypoint=tuple(config.get("Entrypoint") or ()),
            default_command=tuple(config.get("Cmd") or ()),
            base_digest=digests[0] if digests else info["Id"],
        )

    def _changes(self, state: LayerState) -> List[str]:
        changes = []
        for change in (
            f"WORKDIR {state.working_dir}",
            f"ENTRYPOINT {json.dumps(list(state.entrypoint))}",
            f"CMD {json.dumps(list(state.default_command))}",
        ):
            changes += ["--change", change]
        return changes

    def _run_and_commit(self, ctx: BuildContext, state: LayerState, new_state: LayerState,
                        script: Optional[str], script_args: Sequence[str], error, step: str) -> LayerState:
        # Named per build for discard(); labels and env would be committed
        container = f"{self._container_prefix(ctx)}{uuid.uuid4().hex[:8]}"
        args = ["create" if script is None else "run", "--name", container, "--entrypoint", "sh", state.layer_id]
        if script is not None:
            args += ["-c", script, "sh", *script_args]
        try:
            self._docker(args, error=error, step=step)
            committed = self._docker(["commit", *self._changes(new_state), container], step=step)
        finally:
            self._remove_containers([container])
        return new_state.model_copy(update={"layer_id": committed.stdout.strip()})

    @staticmethod
    def _container_prefix(ctx: BuildContext) -> str:
        return f"{CONTAINER_PREFIX}{ctx.build_id[:12]}-"

    def _remove_containers(self, names: List[str]) -> None:
        try:
            subprocess.run([self.docker_bin, "rm", "-f", *names], capture_output=True, timeout=self.timeout, shell=False)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("Could not remove container(s) %s: %s", ", ".join(names), e)

    def set_workdir(self, ctx: BuildContext, state: LayerState, path: str) -> LayerState:
        new_state = state.model_copy(update={"working_dir": path})
        return self._run_and_commit(ctx, state, new_state, WORKDIR_SCRIPT, [path],
                                    error=FilesystemError, step="set_workdir")

    def install_packages(self, ctx: BuildContext, state: LayerState, packages: Sequence[str]) -> LayerState:
        new_state = state.model_copy(update={"packages": tuple(state.packages) + tuple(packages)})
        try:
            return self._run_and_commit(ctx, state, new_state, install_script(packages), [],
                                        error=InstallationError, step="install_packages")
        except InstallationError as e:
            match = MISSING_PACKAGE.search(e.message)
            if match:
                e.message = f"unable to locate package {match.group(1)}"
                e.args = (e.message,)
            raise

    def set_default_command(self, ctx: BuildContext, state: LayerState, argv: Sequence[str]) -> LayerState:
        # Metadata only: the container is created, never started
        new_state = state.model_copy(update={"default_command": tuple(argv)})
        return self._run_and_commit(ctx, state, new_state, None, [],
                                    error=BackendError, step="set_default_command")

    def has_layer(self, layer_id: str) -> bool:
        return self._inspect(layer_id) is not None

    def tag(self, ctx: BuildContext, state: LayerState, tags: List[str]) -> str:
        for tag in tags:
            self._docker(["tag", state.layer_id, tag], step="tag")
        return state.layer_id

    def discard(self, ctx: BuildContext, state: Optional[LayerState]) -> None:
        listing = self._docker(["ps", "-aq", "--filter", f"name={self._container_prefix(ctx)}"], step="discard")
        containers = listing.stdout.split()
        if containers:
            logger.info("[%s] Removing %d leftover container(s)", ctx.name or ctx.build_id, len(containers))
            self._remove_containers(containers)

    def run(self, image: str, argv: Sequence[str], entrypoint: Optional[str] = None) -> RunResult:
        args = [self.docker_bin, "run", "--rm"]
        if entrypoint is not None:
            args += ["--entrypoint", entrypoint]
        args += [image, *argv]
        try:
            result = subprocess.run(args, capture_output=True, text=True, timeout=self.timeout, shell=False)
        except FileNotFoundError:
            raise BackendError(f"docker executable {self.docker_bin!r} not found", step="run")
        except subprocess.TimeoutExpired:
            raise BackendError(f"{image} did not exit within {self.timeout}s", step="run")
        return RunResult(exit_code=result.returncode, stdout=result.stdout, stderr=result.stderr)
