"""
Whole-build retries. The provisioner never retries a step on its own; the
command line can ask for the entire build to be re-run when it failed for a
transient reason (network, registry, daemon).
"""
import logging
from typing import Callable, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..errors import ProvisionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(error: BaseException) -> bool:
    return isinstance(error, ProvisionError) and error.retryable


def with_retries(build: Callable[[], T], retries: int = 0, max_wait: float = 30.0) -> T:
    """
    Calls build, re-running it up to `retries` more times on transient
    provisioning errors. The last error is re-raised unchanged.
    """
    retrying = Retrying(
        retry=retry_if_exception(is_transient),
        stop=stop_after_attempt(retries + 1),
        wait=wait_exponential(multiplier=1, max=max_wait),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    return retrying(build)
