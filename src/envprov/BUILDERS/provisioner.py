"""
The provisioning pipeline: runs a recipe's steps in order against a build
backend, reusing cached layers, and tags the result only when every step
has succeeded.
"""
import logging
import time
import uuid
from typing import List, Optional, Sequence

import pydantic

from ..BACKENDS.base import BuildBackend, BuildContext
from ..errors import ProvisionError, ValidationError
from ..MODELS.artifact import Artifact, LayerState, StepRecord
from ..MODELS.recipe import InstallPackages, Recipe, SelectBase, SetDefaultCommand, SetWorkdir
from ..REGISTRY.image_reference import ImageReference
from ..REGISTRY.layer_cache import LayerStore, MemoryLayerStore
from .cache_keys import base_key, chain_keys

logger = logging.getLogger(__name__)


class Provisioner:
    """
    Turns recipes into tagged artifacts.

    The provisioner owns step ordering, cache lookups and failure handling.
    Building layers is delegated to the backend and remembering them to the
    layer store, so either can be swapped out.
    """
    def __init__(self, backend: BuildBackend, store: Optional[LayerStore] = None):
        """
        :param backend: Build tool used to execute steps.
        :param store: Layer cache shared between builds. Defaults to an
            in-memory store.
        """
        self.backend = backend
        self.store = store if store is not None else MemoryLayerStore()

    def provision(self,
                  recipe: Recipe,
                  tags: Sequence[str] = (),
                  name: str = "",
                  use_cache: bool = True,
                  pull: bool = False,
                  records: Optional[List[StepRecord]] = None) -> Artifact:
        """
        Runs every step of the recipe and tags the resulting artifact.

        :param recipe: A validated recipe.
        :param tags: Tags to apply once all steps succeeded.
        :param name: Label used in log lines.
        :param use_cache: Read cached layers. Layers are always written.
        :param pull: Re-fetch a floating base reference instead of trusting
            the cache.
        :param records: Optional list that receives one StepRecord per step.
        :return: The built artifact.
        :raises ProvisionError: On the first failing step. Nothing is tagged.
        """
        ctx = BuildContext(build_id=uuid.uuid4().hex, name=name)
        label = name or ctx.build_id[:12]
        records = records if records is not None else []
        state: Optional[LayerState] = None
        key = ""

        logger.info("[%s] Provisioning %d step(s) from %s", label, len(recipe.steps), recipe.base.reference)
        try:
            base_step = recipe.steps[0]
            started = time.monotonic()
            state, cached = self._resolve_base(ctx, base_step, use_cache, pull)
            self._record(records, label, base_step, base_key(base_step), state, cached, started)

            for step, key in zip(recipe.steps[1:], chain_keys(state.layer_id, recipe.steps[1:])):
                started = time.monotonic()
                state, cached = self._run_step(ctx, step, key, state, use_cache)
                self._record(records, label, step, key, state, cached, started)

            artifact_id = self.backend.tag(ctx, state, list(tags))
        except Exception as e:
            if isinstance(e, ProvisionError):
                logger.error("[%s] Build failed: %s", label, e)
            self._discard(ctx, state, label)
            raise

        artifact = Artifact(
            artifact_id=artifact_id,
            tags=tuple(tags),
            base_reference=ImageReference.parse(recipe.base.reference).full_name,
            base_digest=state.base_digest,
            working_dir=state.working_dir,
            default_command=state.default_command,
            packages=state.packages,
            cache_key=key,
        )
        logger.info("[%s] Built %s", label, artifact_id)
        return artifact

    def _record(self, records: List[StepRecord], label: str, step, key: str,
                state: LayerState, cached: bool, started: float) -> None:
        records.append(StepRecord(
            kind=step.kind,
            cache_key=key,
            layer_id=state.layer_id,
            cached=cached,
            duration=time.monotonic() - started,
        ))
        logger.info("[%s] %s %s", label, step.kind, "(cached)" if cached else "done")

    def _cached(self, key: str) -> Optional[LayerState]:
        entry = self.store.get(key)
        if entry is None:
            return None
        if not self.backend.has_layer(entry.layer_id):
            logger.info("Cached layer %s is gone, rebuilding", entry.layer_id[:19])
            self.store.remove(key)
            return None
        try:
            return LayerState.model_validate(entry.state)
        except pydantic.ValidationError as e:
            logger.warning("Ignoring malformed cache entry %s: %s", key[:12], e)
            return None

    def _store(self, key: str, state: LayerState) -> LayerState:
        # Another build may have stored this key first; adopt its layer
        entry = self.store.put(key, state.layer_id, state.model_dump(mode="json"))
        try:
            return LayerState.model_validate(entry.state)
        except pydantic.ValidationError as e:
            logger.warning("Keeping own layer, stored entry %s is malformed: %s", key[:12], e)
            return state

    def _resolve_base(self, ctx: BuildContext, step: SelectBase, use_cache: bool, pull: bool):
        key = base_key(step)
        pinned = ImageReference.parse(step.reference).is_pinned
        if use_cache and (pinned or not pull):
            cached = self._cached(key)
            if cached is not None:
                return cached, True

        state = self.backend.resolve_base(ctx, step.reference, pull=pull)
        if pull and not pinned:
            existing = self.store.get(key)
            if existing is not None and existing.layer_id != state.layer_id:
                logger.info("Base %s moved to %s", step.reference, state.layer_id[:19])
                self.store.remove(key)
        return self._store(key, state), False

    def _run_step(self, ctx: BuildContext, step, key: str, state: LayerState, use_cache: bool):
        if use_cache:
            cached = self._cached(key)
            if cached is not None:
                return cached, True
        return self._store(key, self._apply(ctx, step, state)), False

    def _apply(self, ctx: BuildContext, step, state: LayerState) -> LayerState:
        if isinstance(step, SetWorkdir):
            return self.backend.set_workdir(ctx, state, step.resolve(state.working_dir))
        if isinstance(step, InstallPackages):
            return self.backend.install_packages(ctx, state, list(step.packages))
        if isinstance(step, SetDefaultCommand):
            return self.backend.set_default_command(ctx, state, list(step.argv))
        raise ValidationError(f"{step.kind} may only appear first in a recipe")

    def _discard(self, ctx: BuildContext, state: Optional[LayerState], label: str) -> None:
        try:
            self.backend.discard(ctx, state)
        except ProvisionError as e:
            logger.warning("[%s] Cleanup after failure incomplete: %s", label, e)
