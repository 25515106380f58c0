"""
Desired-state tracker.

Read-modify-write over the single desired-state document. Writers inside
one process are serialized by a lock; writers in other processes (the admin
CLI, a second server) are detected by the version compare-and-swap and the
mutation is retried against the fresh document.
"""

import logging
import threading
from collections.abc import Callable

from envm_common.errors import VersionConflictError
from envm_common.models import (
    DESIRED_STATES,
    DesiredState,
    EntityKind,
    EntityState,
    utc_now,
)
from envm_common.store import ConfigStore

logger = logging.getLogger(__name__)


class DesiredStateTracker:
    """Owns all mutations of the desired-state document."""

    def __init__(self, store: ConfigStore, max_attempts: int = 5):
        """
        Initialize the tracker.

        Args:
            store: Config store holding the desired-state document
            max_attempts: Compare-and-swap attempts before giving up
        """
        self.store = store
        self.max_attempts = max(1, max_attempts)
        self._lock = threading.Lock()

    def get_document(self) -> DesiredState:
        return self.store.load_desired_state()

    def set_entity_state(
        self, entity_id: str, state: str, kind: EntityKind = EntityKind.CONTAINERS
    ) -> DesiredState:
        """
        Set the desired state of one entity.

        Args:
            entity_id: Entity ID (container ID or compose project name)
            state: "running" or "stopped"
            kind: CONTAINERS or COMPOSE

        Returns:
            The saved document

        Raises:
            ValueError: If state is not a valid desired state
            VersionConflictError: If every compare-and-swap attempt lost
        """
        if state not in DESIRED_STATES:
            raise ValueError(f"Invalid desired state: {state!r}")

        def mutate(document: DesiredState) -> bool:
            document.entries(kind)[entity_id] = EntityState(
                desired_state=state,
                last_known_state=state,
                last_transition_time=utc_now(),
            )
            return True

        saved = self._update(mutate)
        logger.info(f"Desired state of {kind.value}/{entity_id} set to {state}")
        return saved

    def remove_entity(
        self, entity_id: str, kind: EntityKind = EntityKind.CONTAINERS
    ) -> DesiredState:
        """Remove an entity from the document; removing an absent key is a no-op."""

        def mutate(document: DesiredState) -> bool:
            return document.entries(kind).pop(entity_id, None) is not None

        saved = self._update(mutate)
        logger.info(f"Removed {kind.value}/{entity_id} from desired state")
        return saved

    def _update(self, mutate: Callable[[DesiredState], bool]) -> DesiredState:
        """
        Apply a mutation with compare-and-swap retries.

        The mutation returns False when it changed nothing, in which case the
        document is not rewritten.
        """
        with self._lock:
            for attempt in range(1, self.max_attempts + 1):
                document = self.store.load_desired_state()
                expected_version = document.version
                if not mutate(document):
                    return document
                try:
                    return self.store.save_desired_state(
                        document, expected_version=expected_version
                    )
                except VersionConflictError as e:
                    if attempt == self.max_attempts:
                        raise
                    logger.warning(
                        f"Desired state changed concurrently ({e}), "
                        f"retrying (attempt {attempt + 1}/{self.max_attempts})"
                    )
        raise AssertionError("unreachable")
