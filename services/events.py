"""Keyed event state shared between a workflow run and its listeners."""
from typing import Any, Callable, Dict, List

Listener = Callable[[str, Any], None]


class WorkflowEvents:
    """
    Holds the latest value for each event key (answer, steps, status, ...).

    ``update`` accepts either a value or a function of the previous value and
    notifies every subscriber with the new value.
    """

    def __init__(self):
        self._state: Dict[str, Any] = {}
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def get(self, key: str, default: Any = None) -> Any:
        return self._state.get(key, default)

    def update(self, key: str, value: Any) -> Any:
        new_value = value(self._state.get(key)) if callable(value) else value
        self._state[key] = new_value
        for listener in list(self._listeners):
            listener(key, new_value)
        return new_value

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._state)
