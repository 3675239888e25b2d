"""
Parsers for recipe files, extracting directives and arguments.
"""
import json
import re
from typing import List
from ..errors import ValidationError
from ..MODELS.dockerfile_ast import Instruction

DIRECTIVE = re.compile(r'^\s*([A-Za-z]+)(?:\s+(.*))?$', re.DOTALL)


class DockerfileParser:
    """
    Parser for Dockerfile-style directives.
    """
    def parse(self, dockerfile_path: str) -> List[Instruction]:
        """
        Parses a recipe from a file path.

        Args:
            dockerfile_path (str): Path to the recipe file.

        Returns:
            List[Instruction]: List of parsed instructions.

        Raises:
            ValidationError: If the file is not UTF-8 text.
        """
        with open(dockerfile_path, 'r', encoding='utf-8') as f:
            try:
                content = f.read()
            except UnicodeDecodeError as e:
                raise ValidationError(f"recipe is not UTF-8 text (invalid byte at offset {e.start})")
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> List[Instruction]:
        """
        Parses a recipe from a string content.

        Args:
            content (str): Content of the recipe file.

        Returns:
            List[Instruction]: List of parsed instructions, each tagged with
            the line it starts on.
        """
        instructions = []
        buffer = []
        start_line = 0

        for number, line in enumerate(content.splitlines(), start=1):
            stripped = line.strip()
            # Comments are allowed between continuation lines too
            if not stripped or stripped.startswith('#'):
                continue

            if not buffer:
                start_line = number

            if stripped.endswith('\\'):
                buffer.append(stripped[:-1].strip())
                continue

            buffer.append(stripped)
            instructions.append(self._make_instruction(" ".join(p for p in buffer if p), start_line))
            buffer = []

        # Dangling continuation at end of file
        if buffer:
            instructions.append(self._make_instruction(" ".join(p for p in buffer if p), start_line))

        return instructions

    def _make_instruction(self, text: str, line: int):
        match = DIRECTIVE.match(text)
        if not match:
            return Instruction(instruction="", arguments=[text], raw=text, line=line)

        inst = match.group(1).upper()
        args_str = (match.group(2) or "").strip()

        # JSON/Exec form vs Shell form
        if args_str.startswith('[') and args_str.endswith(']'):
            try:
                args = json.loads(args_str)
                if isinstance(args, list) and all(isinstance(a, str) for a in args):
                    return Instruction(instruction=inst, arguments=args, raw=text, line=line, exec_form=True)
            except json.JSONDecodeError:
                # Not valid JSON, treat as shell form
                pass

        args = [args_str] if args_str else []
        return Instruction(instruction=inst, arguments=args, raw=text, line=line)
