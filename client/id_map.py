from typing import Dict, Optional


class OptimisticIdMap:
    """
    Mapping between ids generated locally before a create call and the ids
    the server assigned. Both directions are kept so either lookup is O(1).
    """

    def __init__(self):
        self._real_to_optimistic: Dict[str, str] = {}
        self._optimistic_to_real: Dict[str, str] = {}

    def set(self, real_id: str, optimistic_id: str) -> None:
        # An id takes part in at most one mapping.
        self.clear(real_id)
        stale_real = self._optimistic_to_real.pop(optimistic_id, None)
        if stale_real is not None:
            self._real_to_optimistic.pop(stale_real, None)

        self._real_to_optimistic[real_id] = optimistic_id
        self._optimistic_to_real[optimistic_id] = real_id

    def get_optimistic(self, real_id: str) -> Optional[str]:
        return self._real_to_optimistic.get(real_id)

    def get_real(self, optimistic_id: str) -> Optional[str]:
        return self._optimistic_to_real.get(optimistic_id)

    def resolve(self, any_id: str) -> str:
        """Server id for ``any_id``; ids with no mapping are assumed to be real already."""
        return self._optimistic_to_real.get(any_id, any_id)

    def clear(self, real_id: str) -> None:
        optimistic_id = self._real_to_optimistic.pop(real_id, None)
        if optimistic_id is not None:
            self._optimistic_to_real.pop(optimistic_id, None)

    def __len__(self) -> int:
        return len(self._real_to_optimistic)
