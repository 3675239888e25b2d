"""
Shared fixtures: a recording in-memory build backend, so the provisioner,
batch builder, verifier and CLI can be exercised without a docker daemon.
"""
import hashlib
import threading

import pytest

from envprov.BACKENDS.base import BuildBackend, RunResult
from envprov.errors import FilesystemError, InstallationError, ResolutionError
from envprov.MODELS.artifact import LayerState
from envprov.MODELS.recipe import InstallPackages, Recipe, SelectBase, SetDefaultCommand, SetWorkdir
from envprov.REGISTRY.image_reference import ImageReference
from envprov.REGISTRY.layer_cache import MemoryLayerStore


def _layer(parent: str, op: str) -> str:
    return "sha256:" + hashlib.sha256(f"{parent}|{op}".encode()).hexdigest()


class FakeBackend(BuildBackend):
    """
    Simulates a build tool. Known bases and installable packages are
    configured per test; every call is recorded.
    """

    def __init__(self):
        self.bases = {
            "docker.io/library/gcc:latest": ("/", ("gcc",)),
            "docker.io/library/openjdk:17-slim": ("/", ("jshell",)),
        }
        self.available_packages = {"make", "libc6-dev", "valgrind"}
        self.files = {"/etc/passwd"}
        self.read_only = {"/proc"}
        self.compilers = {"gcc": "gcc (GCC) 13.2.0", "javac": "javac 17.0.2"}
        self.calls = []
        self.layers = {}
        self.tagged = {}
        self.discarded = []
        self.base_revision = 0
        self._lock = threading.Lock()

    def _record(self, *call):
        with self._lock:
            self.calls.append(call)

    def _new(self, state: LayerState, op: str, **changes) -> LayerState:
        new_state = state.model_copy(update=dict(changes, layer_id=_layer(state.layer_id, op)))
        with self._lock:
            self.layers[new_state.layer_id] = new_state
        return new_state

    def step_calls(self):
        return [c[0] for c in self.calls if c[0] in
                ("resolve_base", "set_workdir", "install_packages", "set_default_command")]

    def resolve_base(self, ctx, reference, pull=False):
        self._record("resolve_base", reference, pull)
        name = ImageReference.parse(reference).full_name
        if name not in self.bases:
            raise ResolutionError(f"pull access denied for {reference}", step="resolve_base")
        workdir, cmd = self.bases[name]
        state = LayerState(
            layer_id=_layer("base", f"{name}#{self.base_revision}"),
            working_dir=workdir,
            default_command=cmd,
            base_digest=f"{name}@sha256:{'a' * 64}",
        )
        with self._lock:
            self.layers[state.layer_id] = state
        return state

    def set_workdir(self, ctx, state, path):
        self._record("set_workdir", path)
        if any(path == f or path.startswith(f + "/") for f in self.files):
            raise FilesystemError(f"mkdir: cannot create directory '{path}': Not a directory", step="set_workdir")
        if any(path.startswith(r) for r in self.read_only):
            raise FilesystemError(f"mkdir: cannot create directory '{path}': Permission denied", step="set_workdir")
        return self._new(state, f"workdir:{path}", working_dir=path)

    def install_packages(self, ctx, state, packages):
        self._record("install_packages", tuple(packages))
        for package in packages:
            if package.split("=")[0] not in self.available_packages:
                raise InstallationError(f"unable to locate package {package}", step="install_packages")
        return self._new(state, f"install:{' '.join(packages)}",
                         packages=tuple(state.packages) + tuple(packages))

    def set_default_command(self, ctx, state, argv):
        self._record("set_default_command", tuple(argv))
        return self._new(state, f"cmd:{argv}", default_command=tuple(argv))

    def has_layer(self, layer_id):
        return layer_id in self.layers

    def tag(self, ctx, state, tags):
        self._record("tag", tuple(tags))
        with self._lock:
            for tag in tags:
                self.tagged[tag] = state.layer_id
        return state.layer_id

    def discard(self, ctx, state):
        self._record("discard", ctx.build_id)
        with self._lock:
            self.discarded.append(ctx.build_id)

    def run(self, image, argv, entrypoint=None):
        self._record("run", image, tuple(argv), entrypoint)
        state = self.layers.get(self.tagged.get(image, image))
        if state is None:
            return RunResult(exit_code=125, stderr=f"Unable to find image '{image}' locally")
        if entrypoint == "sh":
            script = argv[1]
            if script.startswith("pwd"):
                return RunResult(exit_code=0, stdout=state.working_dir + "\n")
            return RunResult(exit_code=0)
        command = list(state.entrypoint) + list(argv)
        banner = self.compilers.get(command[0])
        if banner is None:
            return RunResult(exit_code=127, stderr=f"exec: \"{command[0]}\": executable file not found in $PATH")
        return RunResult(exit_code=0, stdout=banner + "\n")


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def store():
    return MemoryLayerStore()


@pytest.fixture
def c_recipe_text():
    return (
        "FROM gcc:latest\n"
        "\n"
        "WORKDIR /workspace\n"
        "\n"
        "# Minimal packages\n"
        "RUN apt-get update && apt-get install -y --no-install-recommends \\\n"
        "    && rm -rf /var/lib/apt/lists/*\n"
        "\n"
        'CMD ["gcc"]\n'
    )


@pytest.fixture
def c_recipe_file(tmp_path, c_recipe_text):
    path = tmp_path / "Dockerfile.c"
    path.write_text(c_recipe_text)
    return path


@pytest.fixture
def make_recipe():
    """Builds the usual base, workdir, install, command recipe from plain values."""
    def make(base, command, workdir=None, packages=None):
        steps = [SelectBase(reference=base)]
        if workdir is not None:
            steps.append(SetWorkdir(path=workdir))
        if packages is not None:
            steps.append(InstallPackages(packages=tuple(packages)))
        steps.append(SetDefaultCommand(argv=tuple(command)))
        return Recipe(steps=tuple(steps))
    return make
