"""
Dependency graph of derived objects (staged tables, aggregates, summaries).

Nodes reference their upstreams by name only. Any upstream id that is not a
registered derived object is a raw table: it has no state of its own and
only ever acts as the origin of a staleness propagation.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple
import enum
import heapq
import logging

from core.exceptions import ConfigurationError, CyclicDependency, UnknownObject
from core.timeutils import utcnow

logger = logging.getLogger(__name__)


class ObjectState(str, enum.Enum):
    """Refresh state of a derived object"""
    FRESH = "fresh"
    STALE = "stale"
    REFRESHING = "refreshing"
    FAILED = "failed"


@dataclass
class DerivedObject:
    object_id: str
    definition: str
    upstream_ids: Tuple[str, ...]
    staleness_budget: timedelta
    state: ObjectState = ObjectState.FRESH
    last_refreshed_at: Optional[datetime] = None
    stale_since: Optional[datetime] = None
    last_error: Optional[str] = None
    # Upstream changed while a refresh was in flight
    changed_during_refresh: bool = False
    # At least one upstream is itself a derived object
    chained: bool = False

    def age(self, now: datetime) -> Optional[timedelta]:
        """Age of the object's data; None when it was never refreshed"""
        if self.last_refreshed_at is None:
            return None
        return now - self.last_refreshed_at

    def budget_anchor(self) -> Optional[datetime]:
        """
        Start of the staleness clock.

        A chained object is measured from its direct upstream's last
        successful refresh (stale_since is re-stamped by that refresh).
        Everything else is measured from its own last refresh.
        """
        if self.last_refreshed_at is None:
            return None
        if self.chained and self.stale_since is not None:
            return self.stale_since
        return self.last_refreshed_at

    def overrun(self, now: datetime) -> timedelta:
        """How far past its staleness budget the object is (negative when within)"""
        anchor = self.budget_anchor()
        if anchor is None:
            return timedelta.max
        return (now - anchor) - self.staleness_budget

    def is_overdue(self, now: datetime) -> bool:
        anchor = self.budget_anchor()
        return anchor is None or now - anchor >= self.staleness_budget


class DependencyGraph:
    """
    Owns DerivedObjects and their upstream edges.

    Invariants:
    - The graph is acyclic; registrations that would close a cycle are
      rejected as a whole
    - Only the state-transition methods below change object state
    """

    def __init__(self):
        self._objects: Dict[str, DerivedObject] = {}
        # upstream id (raw table or object) -> ids of objects reading from it
        self._dependents: Dict[str, Set[str]] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        object_id: str,
        definition: str,
        upstream_ids: Iterable[str],
        staleness_budget: timedelta,
        last_refreshed_at: Optional[datetime] = None
    ) -> DerivedObject:
        obj = DerivedObject(
            object_id=object_id,
            definition=definition,
            upstream_ids=tuple(upstream_ids),
            staleness_budget=staleness_budget,
            last_refreshed_at=last_refreshed_at
        )
        self.register_many([obj])
        return obj

    def register_many(self, objects: List[DerivedObject]) -> None:
        """
        Register a batch of objects atomically.

        Raises:
            ConfigurationError: duplicate ids, empty upstreams, bad budgets
            CyclicDependency: the batch would introduce a cycle
        """
        batch: Dict[str, DerivedObject] = {}
        for obj in objects:
            if obj.object_id in self._objects or obj.object_id in batch:
                raise ConfigurationError(
                    f"Derived object {obj.object_id} is already registered",
                    context={"object_id": obj.object_id}
                )
            if not obj.upstream_ids:
                raise ConfigurationError(
                    f"Derived object {obj.object_id} has no upstream",
                    context={"object_id": obj.object_id}
                )
            if obj.staleness_budget < timedelta(0):
                raise ConfigurationError(
                    f"Derived object {obj.object_id} has a negative staleness budget",
                    context={"object_id": obj.object_id}
                )
            batch[obj.object_id] = obj

        upstreams = {oid: o.upstream_ids for oid, o in self._objects.items()}
        upstreams.update({oid: o.upstream_ids for oid, o in batch.items()})

        for object_id in batch:
            cycle = self._find_cycle(object_id, upstreams)
            if cycle:
                raise CyclicDependency(
                    f"Registering {object_id} would create a dependency cycle",
                    context={"cycle": " -> ".join(cycle)}
                )

        # Commit
        for obj in batch.values():
            self._objects[obj.object_id] = obj
            for upstream_id in obj.upstream_ids:
                self._dependents.setdefault(upstream_id, set()).add(obj.object_id)
            logger.info(
                f"Registered derived object {obj.object_id} "
                f"(upstream: {', '.join(obj.upstream_ids)}, budget: {obj.staleness_budget})"
            )

        # An id first seen as a raw table may now be a derived object
        for object_id in batch:
            obj = self._objects[object_id]
            obj.chained = any(u in self._objects for u in obj.upstream_ids)
            for dependent_id in self._dependents.get(object_id, ()):
                self._objects[dependent_id].chained = True

    @staticmethod
    def _find_cycle(start: str, upstreams: Dict[str, Tuple[str, ...]]) -> Optional[List[str]]:
        """Return a path start -> ... -> start over upstream edges, if any"""
        stack = [(start, [start])]
        visited: Set[str] = set()
        while stack:
            node, path = stack.pop()
            for upstream_id in upstreams.get(node, ()):
                if upstream_id == start:
                    return path + [start]
                if upstream_id not in visited:
                    visited.add(upstream_id)
                    stack.append((upstream_id, path + [upstream_id]))
        return None

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, object_id: str) -> DerivedObject:
        try:
            return self._objects[object_id]
        except KeyError:
            raise UnknownObject(
                f"Derived object {object_id} is not registered",
                context={"object_id": object_id}
            )

    def __contains__(self, object_id: str) -> bool:
        return object_id in self._objects

    def objects(self) -> List[DerivedObject]:
        return list(self._objects.values())

    def dependents(self, upstream_id: str) -> Set[str]:
        return set(self._dependents.get(upstream_id, ()))

    def ancestors(self, object_id: str) -> Set[str]:
        """Every derived object object_id reads from, directly or transitively"""
        result: Set[str] = set()
        queue = deque(self.get(object_id).upstream_ids)
        while queue:
            upstream_id = queue.popleft()
            if upstream_id in result or upstream_id not in self._objects:
                continue
            result.add(upstream_id)
            queue.extend(self._objects[upstream_id].upstream_ids)
        return result

    def stale_ancestors(self, object_id: str) -> Set[str]:
        """Derived-object ancestors of object_id that are stale or failed"""
        return {
            ancestor_id for ancestor_id in self.ancestors(object_id)
            if self._objects[ancestor_id].state in (ObjectState.STALE, ObjectState.FAILED)
        }

    # ------------------------------------------------------------------
    # Staleness propagation and ordering
    # ------------------------------------------------------------------

    def mark_stale(self, source_id: str, at: Optional[datetime] = None) -> List[str]:
        """
        Mark everything downstream of source_id stale (breadth-first).

        source_id may be a raw table or a derived object; a derived object is
        marked itself as well. Objects currently refreshing keep their state
        and are flagged so the running refresh lands on stale.

        Returns:
            Ids of objects that changed to stale
        """
        at = at or utcnow()
        changed: List[str] = []

        queue = deque([source_id] if source_id in self._objects else [])
        queue.extend(sorted(self._dependents.get(source_id, ())))
        seen: Set[str] = set()

        while queue:
            object_id = queue.popleft()
            if object_id in seen:
                continue
            seen.add(object_id)

            obj = self._objects[object_id]
            if obj.state == ObjectState.REFRESHING:
                obj.changed_during_refresh = True
            elif obj.state == ObjectState.FRESH:
                obj.state = ObjectState.STALE
                obj.stale_since = at
                changed.append(object_id)

            queue.extend(sorted(self._dependents.get(object_id, ())))

        if changed:
            logger.info(f"Marked stale from {source_id}: {', '.join(changed)}")
        return changed

    def topological_order(
        self,
        subset: Iterable[str],
        key: Optional[Callable[[DerivedObject], object]] = None
    ) -> List[str]:
        """
        Order subset so every object follows its upstreams within the subset.

        Among objects that are ready at the same time, lower key(obj) comes
        first (object id breaks remaining ties).

        Raises:
            CyclicDependency: the subset cannot be ordered
        """
        ids = set(subset)
        for object_id in ids:
            self.get(object_id)

        indegree = {
            oid: sum(1 for u in set(self._objects[oid].upstream_ids) if u in ids)
            for oid in ids
        }

        def sort_key(oid: str):
            return (key(self._objects[oid]) if key else 0, oid)

        ready = [(sort_key(oid), oid) for oid, degree in indegree.items() if degree == 0]
        heapq.heapify(ready)

        order: List[str] = []
        while ready:
            _, object_id = heapq.heappop(ready)
            order.append(object_id)
            for dependent_id in self._dependents.get(object_id, ()):
                if dependent_id in indegree:
                    indegree[dependent_id] -= 1
                    if indegree[dependent_id] == 0:
                        heapq.heappush(ready, (sort_key(dependent_id), dependent_id))

        if len(order) != len(ids):
            remaining = sorted(ids - set(order))
            raise CyclicDependency(
                "Objects cannot be ordered; dependency cycle detected",
                context={"objects": ", ".join(remaining)}
            )
        return order

    # ------------------------------------------------------------------
    # State transitions (driven by the refresh scheduler)
    # ------------------------------------------------------------------

    def begin_refresh(self, object_id: str) -> bool:
        """stale|failed -> refreshing. False if the object is not eligible."""
        obj = self.get(object_id)
        if obj.state not in (ObjectState.STALE, ObjectState.FAILED):
            return False
        obj.state = ObjectState.REFRESHING
        obj.changed_during_refresh = False
        return True

    def complete_refresh(self, object_id: str, at: Optional[datetime] = None) -> DerivedObject:
        """
        refreshing -> fresh, stamping the refresh time.

        Direct dependents are re-anchored at this refresh: their staleness
        is measured from their direct upstream's last successful refresh.
        """
        at = at or utcnow()
        obj = self._expect_refreshing(object_id)
        obj.last_refreshed_at = at
        obj.last_error = None
        if obj.changed_during_refresh:
            obj.state = ObjectState.STALE
            obj.stale_since = at
            obj.changed_during_refresh = False
        else:
            obj.state = ObjectState.FRESH
            obj.stale_since = None

        for dependent_id in self._dependents.get(object_id, ()):
            dependent = self._objects[dependent_id]
            if dependent.state == ObjectState.FRESH:
                dependent.state = ObjectState.STALE
                dependent.stale_since = at
            elif dependent.state in (ObjectState.STALE, ObjectState.FAILED):
                dependent.stale_since = at
            else:
                dependent.changed_during_refresh = True
        return obj

    def fail_refresh(self, object_id: str, error: str) -> DerivedObject:
        """refreshing -> failed"""
        obj = self._expect_refreshing(object_id)
        obj.state = ObjectState.FAILED
        obj.last_error = error
        obj.changed_during_refresh = False
        return obj

    def cancel_refresh(self, object_id: str) -> DerivedObject:
        """refreshing -> stale; a cancelled refresh never counts as fresh"""
        obj = self._expect_refreshing(object_id)
        obj.state = ObjectState.STALE
        obj.changed_during_refresh = False
        return obj

    def reset_failed(self) -> List[str]:
        """failed -> stale for every failed object, so it is retried"""
        reset = []
        for obj in self._objects.values():
            if obj.state == ObjectState.FAILED:
                obj.state = ObjectState.STALE
                reset.append(obj.object_id)
        return reset

    def _expect_refreshing(self, object_id: str) -> DerivedObject:
        obj = self.get(object_id)
        if obj.state != ObjectState.REFRESHING:
            raise ConfigurationError(
                f"Derived object {object_id} is not refreshing",
                context={"object_id": object_id, "state": obj.state.value}
            )
        return obj
