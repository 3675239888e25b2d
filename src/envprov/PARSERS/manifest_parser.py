"""
Parser for variant manifests: one YAML file naming several recipes to
build side by side, e.g. one per language toolchain.
"""
import os
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel

from ..errors import ValidationError


class Variant(BaseModel):
    """
    A single recipe to build, and the tag to give its artifact.
    """
    name: str
    recipe: str
    tag: str


class ManifestParser:
    """
    Parser for variant manifest files.
    """
    TAG_PREFIX = "runner-"

    def parse(self, manifest_path: str) -> List[Variant]:
        """
        Parses a manifest from a path. Recipe paths are resolved relative
        to the manifest's directory.

        :param manifest_path: Path to the manifest file.
        :return: Variants in declaration order.
        """
        with open(manifest_path, 'r', encoding='utf-8') as f:
            try:
                content = f.read()
            except UnicodeDecodeError as e:
                raise ValidationError(f"manifest is not UTF-8 text (invalid byte at offset {e.start})")
        base_dir = os.path.dirname(os.path.abspath(manifest_path))
        return self.parse_from_string(content, base_dir=base_dir)

    def parse_from_string(self, content: str, base_dir: str = ".") -> List[Variant]:
        """
        Parses a manifest from a string.

        :param content: YAML content of the manifest.
        :param base_dir: Directory recipe paths are relative to.
        :return: Variants in declaration order.
        """
        try:
            data = yaml.safe_load(content)
        except (yaml.YAMLError, ValueError) as e:
            raise ValidationError(f"manifest is not valid YAML: {e}")
        if not data:
            data = {}
        if not isinstance(data, dict):
            raise ValidationError("manifest must be a mapping with a 'variants' list")

        entries = data.get('variants') or []
        if not isinstance(entries, list):
            raise ValidationError("'variants' must be a list")

        variants = []
        names = set()
        for index, entry in enumerate(entries):
            variant = self._parse_variant(index, entry, base_dir)
            if variant.name in names:
                raise ValidationError(f"duplicate variant name {variant.name!r}")
            names.add(variant.name)
            variants.append(variant)
        return variants

    def _parse_variant(self, index: int, entry: Any, base_dir: str) -> Variant:
        if not isinstance(entry, dict):
            raise ValidationError(f"variant #{index} must be a mapping")
        name: Optional[str] = entry.get('name')
        if not name or not isinstance(name, str):
            raise ValidationError(f"variant #{index} has no name")
        recipe = entry.get('recipe') or f"Dockerfile.{name}"
        tag = entry.get('tag') or f"{self.TAG_PREFIX}{name}"
        return Variant(
            name=name,
            recipe=os.path.join(base_dir, str(recipe)),
            tag=str(tag),
        )
