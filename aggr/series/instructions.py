"""
Formula instructions - the state a compiled series carries across buckets.

Each stateful function call and each variable of a formula becomes one
Instruction. A renderer holds its own clone of every instruction of every
series bound to it; the adapter only ever reads and writes the clones it is
handed, so a replay renderer can never disturb the live one.
"""

import copy
from collections import deque
from dataclasses import dataclass, field
from typing import Any, List, Optional

from ..core.constants import InstructionType


@dataclass
class Instruction:
    """
    One stateful node of a compiled formula.

    Attributes:
        name: Function name, or variable name for ARRAY instructions
        type: Instruction tag
        arg: Window length (functions) or history length (variables)
        arg_option: Option key the window length is read from, if any
        state: Mutable per-renderer state
    """
    name: str
    type: InstructionType
    arg: Optional[int] = None
    arg_option: Optional[str] = None
    state: Any = field(default_factory=dict)

    def clone(self) -> "Instruction":
        """Independent copy with fresh, unshared state."""
        return copy.deepcopy(self)


def initial_state(instruction_type: InstructionType) -> Any:
    """Empty state for an instruction tag."""
    if instruction_type == InstructionType.AVERAGE_FUNCTION:
        return {'points': deque(), 'sum': 0.0, 'count': 0, 'output': None}

    if instruction_type == InstructionType.EXPONENTIAL_FUNCTION:
        return {'previous': None, 'output': None}

    if instruction_type == InstructionType.CUMULATIVE_FUNCTION:
        return {'sum': 0.0, 'output': None}

    if instruction_type == InstructionType.WINDOW_FUNCTION:
        return {'points': deque(), 'output': None}

    if instruction_type == InstructionType.OHLC:
        return {'open': None, 'high': None, 'low': None, 'close': None}

    if instruction_type == InstructionType.ARRAY:
        return [None]

    raise ValueError(f"unknown instruction type: {instruction_type}")


def clone_instructions(instructions: List[Instruction]) -> List[Instruction]:
    return [instruction.clone() for instruction in instructions]


def advance_instructions(functions: List[Instruction], variables: List[Instruction]) -> None:
    """
    Commit one closed bucket into the instruction state.

    Called once per bucket that had data, before the next bucket starts.
    Outputs computed during the bucket are committed and then cleared so a
    bucket without data commits nothing.
    """
    for instruction in functions:
        state = instruction.state
        instruction_type = instruction.type

        if instruction_type == InstructionType.AVERAGE_FUNCTION:
            if state['output'] is not None:
                state['points'].append(state['output'])
                state['sum'] += state['output']
                state['count'] += 1

            # queue keeps n - 1 past outputs; the current input completes the window
            while state['count'] > max(0, instruction.arg - 1):
                state['sum'] -= state['points'].popleft()
                state['count'] -= 1

            state['output'] = None

        elif instruction_type == InstructionType.EXPONENTIAL_FUNCTION:
            if state['output'] is not None:
                state['previous'] = state['output']
            state['output'] = None

        elif instruction_type == InstructionType.CUMULATIVE_FUNCTION:
            if state['output'] is not None:
                state['sum'] = state['output']
            state['output'] = None

        elif instruction_type == InstructionType.WINDOW_FUNCTION:
            if state['output'] is not None:
                state['points'].append(state['output'])
            while len(state['points']) > instruction.arg:
                state['points'].popleft()
            state['output'] = None

        elif instruction_type == InstructionType.OHLC:
            if state['close'] is not None:
                state['open'] = state['close']
                state['high'] = state['close']
                state['low'] = state['close']

    for instruction in variables:
        history = instruction.state
        history.insert(0, history[0])
        del history[max(1, instruction.arg):]


def update_arguments(functions: List[Instruction], options: dict) -> None:
    """Re-read option-driven window lengths (e.g. ``sma(x, options.length)``)."""
    for instruction in functions:
        if instruction.arg_option is None:
            continue

        value = options.get(instruction.arg_option)

        try:
            length = int(value)
        except (TypeError, ValueError):
            continue

        if length >= 1:
            instruction.arg = length
