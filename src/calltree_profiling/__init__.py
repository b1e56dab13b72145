"""calltree-profiling: Hierarchical call-tree profiler for nested, named code regions.

Provides:
- ProfilerRecords: Accumulation tree of timing samples keyed by call path
- ScopedRegion: Context manager timing one named region on a tree
- create_profiler: Factory for the long-lived tree owned by the host application
- profile_scope: Convenience context manager that tolerates a missing tree
- profiled: Decorator timing every call of a function

Usage:
    from calltree_profiling import create_profiler, profile_scope

    records = create_profiler()

    with profile_scope("Frame", records):
        with profile_scope("Physics", records):
            step_physics()
        with profile_scope("Render", records):
            draw()

    records.print_report()
"""

from calltree_profiling._core import (
    Node,
    ProfilerRecords,
    ScopedRegion,
    create_profiler,
    profile_scope,
    profiled,
)

__all__ = [
    "Node",
    "ProfilerRecords",
    "ScopedRegion",
    "create_profiler",
    "profile_scope",
    "profiled",
]

__version__ = "0.1.0"
