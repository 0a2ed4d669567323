import logging
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OptimisticMutation:
    """
    Local-first mutation with rollback.

    capture() takes a pre-image of the local state, apply() mutates local state,
    commit() performs the remote call and restore(pre_image) puts the pre-image
    back if commit() raises. The original exception is re-raised after restore.
    """

    def __init__(
        self,
        capture: Callable[[], Any],
        apply: Callable[[], None],
        commit: Callable[[], T],
        restore: Callable[[Any], None],
        description: str = "mutation"
    ):
        self.capture = capture
        self.apply = apply
        self.commit = commit
        self.restore = restore
        self.description = description
        self.pre_image: Optional[Any] = None

    def run(self) -> T:
        self.pre_image = self.capture()
        self.apply()
        try:
            return self.commit()
        except Exception as e:
            logger.error(f"{self.description} failed, rolling back local state: {e}")
            self.restore(self.pre_image)
            raise
