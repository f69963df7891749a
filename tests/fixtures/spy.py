"""A replay target that logs every read, write and call made on it."""

from __future__ import annotations

from typing import Any


class Spy:
    """Every member is another Spy; effects land in a shared list.

    Entries name the object by the path it was reached through, so two runs
    of the same operations produce equal logs.
    """

    def __init__(self, effects: list[tuple[Any, ...]], path: str = "spy") -> None:
        object.__setattr__(self, "_effects", effects)
        object.__setattr__(self, "_path", path)

    def __getattr__(self, name: str) -> Spy:
        if name.startswith("_"):
            raise AttributeError(name)
        self._effects.append(("read", self._path, name))
        return Spy(self._effects, f"{self._path}.{name}")

    def __setattr__(self, name: str, value: Any) -> None:
        self._effects.append(("write", self._path, name, _describe(value)))

    def __call__(self, *args: Any, **kwargs: Any) -> Spy:
        self._effects.append((
            "call",
            self._path,
            tuple(_describe(arg) for arg in args),
            {key: _describe(value) for key, value in kwargs.items()},
        ))
        return Spy(self._effects, f"{self._path}()")

    def counts(self) -> dict[str, int]:
        totals = {"read": 0, "write": 0, "call": 0}
        for effect in self._effects:
            totals[effect[0]] += 1
        return totals


def _describe(value: Any) -> Any:
    if isinstance(value, Spy):
        return f"<{value._path}>"
    return value
