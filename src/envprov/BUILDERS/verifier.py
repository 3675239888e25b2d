"""
Smoke checks for a built artifact: the default command answers --version,
the process starts in the declared working directory and can write to it,
and no package index files were left behind.
"""
import logging
import uuid
from typing import List, Optional

from pydantic import BaseModel

from ..BACKENDS.base import BuildBackend, BuildContext
from ..MODELS.recipe import Recipe

logger = logging.getLogger(__name__)

APT_LISTS = "/var/lib/apt/lists"


class CheckResult(BaseModel):
    name: str
    passed: bool
    detail: str = ""


class VerificationReport(BaseModel):
    image: str
    checks: List[CheckResult] = []

    @property
    def passed(self) -> bool:
        return bool(self.checks) and all(c.passed for c in self.checks)


class Verifier:
    """
    Instantiates an artifact a few times and checks what the runner relies on.
    """
    def __init__(self, backend: BuildBackend):
        self.backend = backend

    def verify(self, image: str, recipe: Recipe, working_dir: Optional[str] = None) -> VerificationReport:
        """
        :param image: Tag or id of the artifact.
        :param recipe: Recipe the artifact was built from.
        :param working_dir: Expected working directory. Defaults to the one
            the recipe declares, resolved against the base image's.
        :raises ProvisionError: If the base image cannot be inspected.
        """
        if working_dir is None:
            working_dir = self._expected_workdir(image, recipe)
        report = VerificationReport(image=image)
        report.checks.append(self._check_command(image, recipe))
        report.checks.append(self._check_workdir(image, working_dir))
        report.checks.append(self._check_index_purged(image))
        for check in report.checks:
            logger.info("%s: %s %s", image, check.name, "ok" if check.passed else f"FAILED ({check.detail})")
        return report

    def _expected_workdir(self, image: str, recipe: Recipe) -> str:
        ctx = BuildContext(build_id=uuid.uuid4().hex, name=image)
        base = self.backend.resolve_base(ctx, recipe.base.reference)
        return recipe.working_directory(base.working_dir)

    def _check_command(self, image: str, recipe: Recipe) -> CheckResult:
        argv = list(recipe.default_command) + ["--version"]
        result = self.backend.run(image, argv)
        first_line = result.stdout.strip().splitlines()[0] if result.stdout.strip() else ""
        if result.ok and first_line:
            return CheckResult(name="default_command", passed=True, detail=first_line)
        detail = result.stderr.strip() or f"exit {result.exit_code}, no output"
        return CheckResult(name="default_command", passed=False, detail=detail)

    def _check_workdir(self, image: str, expected: str) -> CheckResult:
        result = self.backend.run(image, ["-c", "pwd && test -w ."], entrypoint="sh")
        actual = result.stdout.strip()
        if not result.ok:
            return CheckResult(name="working_dir", passed=False, detail=f"{actual or expected} is not writable")
        if actual != expected:
            return CheckResult(name="working_dir", passed=False, detail=f"expected {expected}, got {actual}")
        return CheckResult(name="working_dir", passed=True, detail=actual)

    def _check_index_purged(self, image: str) -> CheckResult:
        script = f"test ! -d {APT_LISTS} || find {APT_LISTS} -mindepth 1 -type f"
        result = self.backend.run(image, ["-c", script], entrypoint="sh")
        leftovers = result.stdout.split()
        if result.ok and not leftovers:
            return CheckResult(name="index_purged", passed=True)
        detail = f"{len(leftovers)} file(s) under {APT_LISTS}" if leftovers else result.stderr.strip()
        return CheckResult(name="index_purged", passed=False, detail=detail)
