"""
Staged refresh of derived objects.

Modules:
    graph: Dependency graph of derived objects, staleness propagation and
        topological ordering
    scheduler: Periodic refresh passes driven by staleness budgets

Usage:
    from refresh.graph import DependencyGraph, ObjectState
    from refresh.scheduler import RefreshScheduler
"""

__all__ = [
    "DependencyGraph",
    "DerivedObject",
    "ObjectState",
    "RefreshScheduler",
    "RefreshPassResult",
]
