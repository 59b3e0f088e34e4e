"""Named scalar parameters and the field functions that reference them.

A :class:`Parameter` is a mutable named scalar used both as a physical
quantity (velocity, Mach number, density) and as a design variable for
sensitivity analysis.  All parameters of an analysis are owned by a single
:class:`ParameterSet`; field functions and the flutter solver only hold
references to them.
"""
from __future__ import annotations

from typing import Iterator, Union

Number = Union[int, float]


class Parameter:
    """A named mutable scalar."""

    __slots__ = ("_name", "_value")

    def __init__(self, name: str, value: Number = 0.0) -> None:
        if not name:
            raise ValueError("Parameter name must be a non-empty string")
        self._name = str(name)
        self._value = float(value)

    @property
    def name(self) -> str:
        return self._name

    @property
    def value(self) -> float:
        return self._value

    @value.setter
    def value(self, new_value: Number) -> None:
        self._value = float(new_value)

    def set(self, new_value: Number) -> "Parameter":
        self._value = float(new_value)
        return self

    def __float__(self) -> float:
        return self._value

    def __repr__(self) -> str:
        return f"Parameter({self._name!r}, {self._value!r})"


class ParameterSet:
    """Owning container of the parameters of one analysis session.

    Names are unique within the set; sensitivity lookups are by name.
    """

    def __init__(self) -> None:
        self._params: dict[str, Parameter] = {}

    def add(self, name: str, value: Number = 0.0) -> Parameter:
        """Create and own a new parameter.

        Raises
        ------
        ValueError
            If a parameter with the same name already exists.
        """
        if name in self._params:
            raise ValueError(f"Duplicate parameter name {name!r}")
        param = Parameter(name, value)
        self._params[name] = param
        return param

    def get(self, name: str) -> Parameter:
        try:
            return self._params[name]
        except KeyError:
            raise KeyError(
                f"Parameter not found by name: {name!r}. "
                f"Valid names are: {sorted(self._params)}"
            ) from None

    def __getitem__(self, name: str) -> Parameter:
        return self.get(name)

    def __contains__(self, item: object) -> bool:
        if isinstance(item, Parameter):
            return self._params.get(item.name) is item
        return item in self._params

    def __iter__(self) -> Iterator[Parameter]:
        return iter(self._params.values())

    def __len__(self) -> int:
        return len(self._params)

    def names(self) -> list[str]:
        return list(self._params)

    def values(self) -> dict[str, float]:
        """Snapshot of ``{name: value}``."""
        return {name: p.value for name, p in self._params.items()}

    def clear(self) -> None:
        self._params.clear()


class ConstantFieldFunction:
    """A spatially constant field whose value is a referenced parameter."""

    def __init__(self, name: str, parameter: Parameter) -> None:
        self._name = name
        self._parameter = parameter

    @property
    def name(self) -> str:
        return self._name

    @property
    def parameter(self) -> Parameter:
        return self._parameter

    def value(self) -> float:
        return self._parameter.value

    def derivative(self, parameter: Parameter) -> float:
        """d(field)/d(parameter): 1 for the referenced parameter, else 0."""
        return 1.0 if parameter is self._parameter else 0.0

    def depends_on(self, parameter: Parameter) -> bool:
        return parameter is self._parameter

    def __repr__(self) -> str:
        return f"ConstantFieldFunction({self._name!r}, {self._parameter!r})"
