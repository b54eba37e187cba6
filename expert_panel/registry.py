"""Expert registry: the fixed, ordered panel of expert descriptors."""

import logging
from collections.abc import Iterable, Iterator

from expert_panel.errors import InvalidRequest
from expert_panel.models import ExpertDescriptor

logger = logging.getLogger(__name__)


class ExpertRegistry:
    """Read-only panel built once at startup and shared across requests.

    Declared order is significant: it is the tie-break for every ordering
    decision downstream, so identical inputs always produce identical output.
    """

    def __init__(self, experts: Iterable[ExpertDescriptor]) -> None:
        ordered = tuple(experts)
        if not ordered:
            raise ValueError("Expert registry needs at least one expert")

        seen: set[str] = set()
        for expert in ordered:
            if expert.id in seen:
                raise ValueError(f"Duplicate expert id: {expert.id}")
            if expert.default_weight < 0:
                raise ValueError(f"Expert {expert.id} has a negative default weight")
            seen.add(expert.id)

        self._experts = ordered
        self._index = {e.id: i for i, e in enumerate(ordered)}
        self._capabilities = frozenset(c for e in ordered for c in e.capabilities)
        logger.debug("Registered %d experts: %s", len(ordered), ", ".join(self._index))

    def __iter__(self) -> Iterator[ExpertDescriptor]:
        return iter(self._experts)

    def __len__(self) -> int:
        return len(self._experts)

    def __contains__(self, expert_id: object) -> bool:
        return expert_id in self._index

    @property
    def experts(self) -> tuple[ExpertDescriptor, ...]:
        return self._experts

    @property
    def capabilities(self) -> frozenset[str]:
        return self._capabilities

    def get(self, expert_id: str) -> ExpertDescriptor:
        return self._experts[self._index[expert_id]]

    def order(self, expert_id: str) -> int:
        """Declared position of an expert, used as the deterministic tie-break."""
        return self._index[expert_id]

    def select(self, required_capabilities: Iterable[str] = ()) -> list[ExpertDescriptor]:
        """Experts whose capabilities intersect the required set, in declared order.

        An empty requirement selects the whole panel.

        Raises:
            InvalidRequest: If a required capability is not offered by any expert.
        """
        required = frozenset(required_capabilities)
        if not required:
            return list(self._experts)

        unknown = required - self._capabilities
        if unknown:
            raise InvalidRequest(f"Unknown required capabilities: {', '.join(sorted(unknown))}")

        return [e for e in self._experts if e.capabilities & required]
