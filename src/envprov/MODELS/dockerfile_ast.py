"""
Models for the parsed form of a recipe file.
"""
from typing import List
from pydantic import BaseModel


class Instruction(BaseModel):
    """
    Represents a single directive of a recipe file.
    """
    instruction: str
    arguments: List[str]
    raw: str
    line: int = 0
    exec_form: bool = False

