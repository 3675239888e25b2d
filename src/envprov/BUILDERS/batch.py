"""
Concurrent builds of several variants. Builds share nothing but the layer
store, so they need no coordination beyond the store's write-once entries.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List

from ..errors import ProvisionError
from ..MODELS.artifact import BuildResult
from ..PARSERS.manifest_parser import Variant
from ..PARSERS.recipe_parser import RecipeParser
from .provisioner import Provisioner
from .retry import with_retries

logger = logging.getLogger(__name__)


class BatchBuilder:
    """
    Builds every variant of a manifest, several at a time.
    """
    def __init__(self, provisioner: Provisioner, jobs: int = 2, retries: int = 0):
        """
        :param provisioner: Provisioner shared by all builds.
        :param jobs: Maximum number of builds running at once.
        :param retries: Whole-build retries per variant on transient errors.
        """
        if jobs < 1:
            raise ValueError("jobs must be at least 1")
        self.provisioner = provisioner
        self.jobs = jobs
        self.retries = retries
        self.parser = RecipeParser()

    def build_all(self, variants: List[Variant], **options) -> List[BuildResult]:
        """
        Builds all variants. A failing variant does not stop the others.

        :param variants: Variants to build.
        :return: One result per variant, in the order given.
        """
        logger.info("Building %d variant(s) with %d job(s)", len(variants), self.jobs)
        with ThreadPoolExecutor(max_workers=self.jobs, thread_name_prefix="envprov") as pool:
            futures = [pool.submit(self.build_one, v, **options) for v in variants]
            return [f.result() for f in futures]

    def build_one(self, variant: Variant, **options) -> BuildResult:
        try:
            recipe = self.parser.parse(variant.recipe)
        except OSError as e:
            return BuildResult(name=variant.name, error=f"cannot read recipe {variant.recipe}: {e.strerror}",
                               failed_step="validate")
        except ProvisionError as e:
            return BuildResult(name=variant.name, error=str(e), failed_step=e.step)
        except Exception as e:
            logger.exception("[%s] Unexpected error reading %s", variant.name, variant.recipe)
            return BuildResult(name=variant.name, error=f"unexpected error: {e!r}", failed_step="validate")

        result = BuildResult(name=variant.name, recipe=recipe)

        def attempt():
            del result.steps[:]
            return self.provisioner.provision(recipe, [variant.tag], name=variant.name,
                                              records=result.steps, **options)

        try:
            result.artifact = with_retries(attempt, retries=self.retries)
        except ProvisionError as e:
            result.error = str(e)
            result.failed_step = e.step
        except Exception as e:
            # Reported in this variant's row; the other builds carry on
            logger.exception("[%s] Unexpected error", variant.name)
            result.error = f"unexpected error: {e!r}"
        return result
