"""
Stored procedure parameters.

    I('Id', 7)                  input
    IO('Counter', 0, 'int')     input/output
    O('NewId', 'int')           output

Output and input/output parameter values are written back to
``Parameter.value`` after the call completes.
"""
import enum
import re
from dataclasses import dataclass
from typing import Any

_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_$#]*$')


class Direction(enum.Enum):
    """Parameter direction."""
    INPUT = 'input'
    INPUT_OUTPUT = 'input_output'
    OUTPUT = 'output'


@dataclass
class Parameter:
    """A named (or positional, when name is None) procedure argument.

    sql_type is the declared SQL type used for output variables on
    dialects that need one (SQL Server).
    """
    name: str | None
    value: Any = None
    direction: Direction = Direction.INPUT
    sql_type: str | None = None

    def __post_init__(self):
        if self.name is not None:
            self.name = self.name.lstrip('@')
            if not _IDENTIFIER.match(self.name):
                raise ValueError(f'Invalid parameter name: {self.name!r}')
        if self.name is None and self.direction is not Direction.INPUT:
            raise ValueError('Output parameters must be named')
        if self.sql_type is not None and not re.match(r'^[A-Za-z0-9_ (),]+$', self.sql_type):
            raise ValueError(f'Invalid SQL type: {self.sql_type!r}')

    @property
    def is_output(self) -> bool:
        return self.direction is not Direction.INPUT

    @classmethod
    def input(cls, name: str | None, value: Any) -> 'Parameter':
        return cls(name, value, Direction.INPUT)

    @classmethod
    def inout(cls, name: str, value: Any, sql_type: str | None = None) -> 'Parameter':
        return cls(name, value, Direction.INPUT_OUTPUT, sql_type)

    @classmethod
    def output(cls, name: str, sql_type: str | None = None) -> 'Parameter':
        return cls(name, None, Direction.OUTPUT, sql_type)


I = Parameter.input
IO = Parameter.inout
O = Parameter.output


def as_parameters(values: tuple[Any, ...]) -> list[Parameter]:
    """Wrap bare values as positional input parameters.

    Positional parameters must come before named ones.
    """
    parameters = [v if isinstance(v, Parameter) else Parameter(None, v) for v in values]
    seen_named = False
    for param in parameters:
        if param.name is not None:
            seen_named = True
        elif seen_named:
            raise ValueError('Positional parameters must precede named parameters')
    return parameters
