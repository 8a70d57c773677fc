"""
Series Layer - formula compilation and evaluation.

Main Components:
    SeriesTranspiler: Compiles formula text into a SerieModel and adapters
    SerieModel: Canonical output, output kind, instructions and references
    Instruction: Per-renderer state of one stateful formula node
    advance_instructions: Commits a closed bucket into instruction state
"""

from . import utils
from .instructions import Instruction, advance_instructions, clone_instructions
from .parser import parse
from .transpiler import SerieModel, SeriesTranspiler

__all__ = [
    "utils",
    "Instruction",
    "advance_instructions",
    "clone_instructions",
    "parse",
    "SerieModel",
    "SeriesTranspiler",
]
