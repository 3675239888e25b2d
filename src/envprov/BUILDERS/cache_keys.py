"""
Cache key derivation for recipe steps.

The base step is keyed by its normalized reference. Every later step hashes
its parent's key with the step's canonical form, and the chain starts from
the resolved base layer, so a change to the base content or to any step
invalidates that step and everything after it.
"""
import hashlib
import json
from typing import Any, Dict, List

from ..MODELS.recipe import SelectBase
from ..REGISTRY.image_reference import ImageReference

ROOT_KEY = "0" * 64
KEY_VERSION = 1


def _digest(parent: str, payload: Dict[str, Any]) -> str:
    canonical = json.dumps(
        {"v": KEY_VERSION, "parent": parent, "step": payload},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def step_payload(step) -> Dict[str, Any]:
    """
    Canonical, JSON-serializable form of a step.
    Base references are normalized so 'gcc' and 'docker.io/library/gcc:latest'
    share a key.
    """
    payload = step.model_dump(mode="json")
    if isinstance(step, SelectBase):
        payload["reference"] = ImageReference.parse(step.reference).full_name
    return payload


def base_key(step: SelectBase) -> str:
    """Key under which a base reference's resolution is cached."""
    return _digest(ROOT_KEY, step_payload(step))


def layer_key(layer_id: str) -> str:
    """Chain root for the steps built on top of a resolved base layer."""
    return _digest(ROOT_KEY, {"kind": "base_layer", "layer_id": layer_id})


def step_key(parent_key: str, step) -> str:
    return _digest(parent_key, step_payload(step))


def chain_keys(base_layer_id: str, steps) -> List[str]:
    """
    Keys for the steps following the base, in order.
    """
    keys = []
    parent = layer_key(base_layer_id)
    for step in steps:
        parent = step_key(parent, step)
        keys.append(parent)
    return keys
