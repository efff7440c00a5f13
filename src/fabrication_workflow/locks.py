"""Per-project mutual exclusion.

Every mutating operation on a project runs inside ``ProjectLocks.hold``.
Locks are re-entrant so nested helpers (the artifact store, the revision
ledger) join the caller's critical section instead of taking a second lock.
Operations on different projects never contend.
"""

from __future__ import annotations

import logging
import threading
from contextlib import ExitStack, contextmanager
from typing import Callable, ContextManager, Iterator

logger = logging.getLogger(__name__)


class _ProjectLockState:
    __slots__ = ("lock", "depth", "outer", "cancel_requests", "users")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.depth = 0
        self.outer: ExitStack | None = None
        self.cancel_requests = 0
        # Threads holding or waiting on this entry; it is evicted at zero.
        self.users = 0


class ProjectLocks:
    """Registry of re-entrant locks keyed by project id.

    ``outer_section`` is entered on the outermost acquisition only; the
    filesystem store uses it to extend the critical section across
    processes. An entry lives only while some thread holds, waits for or is
    cancelling the project, so the registry stays bounded by the number of
    projects in flight.
    """

    def __init__(self, outer_section: Callable[[str], ContextManager[None]] | None = None) -> None:
        self._registry_lock = threading.Lock()
        self._states: dict[str, _ProjectLockState] = {}
        self._outer_section = outer_section

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._states)

    def _checkout(self, project_id: str) -> _ProjectLockState:
        with self._registry_lock:
            state = self._states.get(project_id)
            if state is None:
                state = _ProjectLockState()
                self._states[project_id] = state
            state.users += 1
            return state

    def _release(self, project_id: str, state: _ProjectLockState) -> None:
        with self._registry_lock:
            state.users -= 1
            if state.users == 0 and state.cancel_requests == 0:
                self._states.pop(project_id, None)

    @contextmanager
    def hold(self, project_id: str) -> Iterator[None]:
        state = self._checkout(project_id)
        try:
            with state.lock:
                if state.depth == 0 and self._outer_section is not None:
                    stack = ExitStack()
                    stack.enter_context(self._outer_section(project_id))
                    state.outer = stack
                state.depth += 1
                try:
                    yield
                finally:
                    state.depth -= 1
                    if state.depth == 0 and state.outer is not None:
                        outer, state.outer = state.outer, None
                        outer.close()
        finally:
            self._release(project_id, state)

    # ------------------------------------------------------------------
    # Cancellation pre-emption
    # ------------------------------------------------------------------

    @contextmanager
    def cancellation(self, project_id: str) -> Iterator[None]:
        """Flag a pending cancellation, then hold the project's lock.

        While the flag is raised, operations that acquire the lock ahead of
        the canceller observe ``cancel_pending`` and fail fast.
        """
        state = self._checkout(project_id)
        with self._registry_lock:
            state.cancel_requests += 1
        logger.debug("Cancellation requested for %s", project_id)
        flag_cleared = False
        try:
            with self.hold(project_id):
                with self._registry_lock:
                    state.cancel_requests -= 1
                flag_cleared = True
                yield
        finally:
            if not flag_cleared:
                with self._registry_lock:
                    state.cancel_requests -= 1
            self._release(project_id, state)

    def cancel_pending(self, project_id: str) -> bool:
        with self._registry_lock:
            state = self._states.get(project_id)
            return state is not None and state.cancel_requests > 0
