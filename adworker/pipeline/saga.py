"""
Compensation list for paid side effects.

Each successful side effect (credit deduction, ...) registers an undo step.
If setup fails before the work is durably handed to a provider, the steps
run once, newest first. `commit()` drops them once the work is durable.
"""

import logging
from typing import Callable

from .. import metrics

logger = logging.getLogger(__name__)


class CompensationSaga:
    def __init__(self, name: str):
        self.name = name
        self._steps: list[tuple[str, Callable[[], object]]] = []

    def add(self, description: str, undo: Callable[[], object]) -> None:
        self._steps.append((description, undo))

    @property
    def pending(self) -> list[str]:
        return [description for description, _ in self._steps]

    def commit(self) -> None:
        if self._steps:
            logger.info(f"[{self.name}] committed; {len(self._steps)} compensation(s) released")
        self._steps.clear()

    def compensate(self) -> list[str]:
        """
        Run every registered undo step in reverse order, exactly once.

        A failing step is logged and reported but does not stop the others.

        Returns:
            Descriptions of the steps that failed.
        """
        steps, self._steps = self._steps, []
        failures = []
        for description, undo in reversed(steps):
            try:
                undo()
            except Exception as e:
                failures.append(description)
                metrics.record_error("saga", "compensation_failed", f"{description}: {e}", self.name)
                logger.error(
                    f"[{self.name}] COMPENSATION FAILED ({description}): {e}",
                    exc_info=True,
                )
            else:
                logger.info(f"[{self.name}] compensation '{description}' succeeded")
        return failures
