"""Core call-tree profiling utilities.

Design by Contract (P1 - MANDATORY):
- Elapsed samples MUST be non-negative (crash if negative)
- A region MUST be stopped at most once (crash on second stop)
- Regions MUST stop in strict reverse order of creation
- Popping past the root is a caller bug (crash)
- No hidden global tree (every region is given its tree explicitly)

Public constructors and methods use beartype for runtime type enforcement.
Nodes live in an arena owned by the tree and refer to their parent by index.
"""

import functools
import sys
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from typing import Any, TextIO

from beartype import beartype
from loguru import logger

DEFAULT_ROOT_NAME = "[Profiler]"
UNACCOUNTED_LABEL = "[unaccounted]"

# Averages below this are treated as "no self time" when rendering.
NEGLIGIBLE_TIME = 1e-6
MS_THRESHOLD = 0.1
UNACCOUNTED_FRACTION = 0.05
INDENT = "  "


class Node:
    """One entry of the accumulation tree.

    Attributes:
        index: Position of this node in its tree's arena
        name: Region name (unique among siblings only)
        parent: Arena index of the parent, None for the root
        children: Arena indices of children, in first-seen order
        total_time: Sum of samples recorded at this exact call path (seconds)
        num_samples: Number of samples recorded here (starts at initial_samples)
    """

    __slots__ = ("index", "name", "parent", "children", "total_time", "num_samples")

    def __init__(self, index: int, name: str, parent: int | None, num_samples: int) -> None:
        self.index = index
        self.name = name
        self.parent = parent
        self.children: list[int] = []
        self.total_time: float = 0.0
        self.num_samples: int = num_samples

    def __repr__(self) -> str:
        return (
            f"Node(name={self.name!r}, total_time={self.total_time:.6f}, "
            f"num_samples={self.num_samples})"
        )


class ProfilerRecords:
    """Accumulates timing samples in a tree keyed by call path.

    Not thread-safe: one tree is driven by one nested sequence of regions.
    Nodes are never freed for the lifetime of the tree.

    Args:
        root_name: Display label of the root node
        clock: Monotonic time source in seconds, used by regions on this tree
        initial_samples: Sample count a node starts with. The default of 1 adds
            a zero-duration phantom sample to every node, so averages read as
            total_time / (real_samples + 1). Pass 0 for plain means.

    Example:
        records = create_profiler()
        with records.scope("load"):
            with records.scope("parse"):
                parse(data)
        records.print_report()
    """

    @beartype
    def __init__(
        self,
        root_name: str = DEFAULT_ROOT_NAME,
        clock: Callable[[], float] = time.perf_counter,
        initial_samples: int = 1,
    ) -> None:
        assert initial_samples >= 0, (
            f"initial_samples must be non-negative: {initial_samples}"
        )
        self.clock = clock
        self.initial_samples = initial_samples
        self.nodes: list[Node] = [Node(0, root_name, None, initial_samples)]
        self._cursor: int = 0
        self.depth: int = 0

    @property
    def root(self) -> Node:
        return self.nodes[0]

    @property
    def cursor(self) -> Node:
        """Node of the innermost open region (the root when none is open)."""
        return self.nodes[self._cursor]

    def is_at_root(self) -> bool:
        return self._cursor == 0

    def parent_of(self, node: Node) -> Node | None:
        if node.parent is None:
            return None
        return self.nodes[node.parent]

    def children_of(self, node: Node) -> list[Node]:
        return [self.nodes[i] for i in node.children]

    @beartype
    def get_or_create_child(self, parent: Node, name: str) -> Node:
        """Return the child of ``parent`` called ``name``, creating it if needed.

        Siblings are few, so a linear scan is used instead of a mapping.
        """
        for i in parent.children:
            child = self.nodes[i]
            if child.name == name:
                return child

        child = Node(len(self.nodes), name, parent.index, self.initial_samples)
        self.nodes.append(child)
        parent.children.append(child.index)
        logger.trace(f"new profiler node {name!r} under {parent.name!r}")
        return child

    @beartype
    def push(self, name: str) -> None:
        self._cursor = self.get_or_create_child(self.cursor, name).index
        self.depth += 1

    def pop(self) -> None:
        """Move the cursor to its parent. Callers must pair every pop with a push."""
        parent = self.cursor.parent
        assert parent is not None, (
            "Cannot pop the profiler root: push/pop are unbalanced."
        )
        self._cursor = parent
        self.depth -= 1

    @beartype
    def insert_sample(self, elapsed: float) -> None:
        """Record ``elapsed`` seconds at the cursor node (before the matching pop)."""
        assert elapsed >= 0, f"Elapsed time must be non-negative: {elapsed}"
        node = self.cursor
        node.total_time += elapsed
        node.num_samples += 1

    @staticmethod
    def average(node: Node) -> float:
        return node.total_time / max(node.num_samples, 1)

    def scope(self, label: str) -> "ScopedRegion":
        """Begin a region on this tree. Use as a context manager or call stop()."""
        return ScopedRegion(self, label)

    def render(self) -> str:
        """Render the tree as an indented report of averaged times.

        Percentages on each level are relative to the average of the node
        being expanded, not to a global total.
        """
        lines: list[str] = []
        self._render(self.root, 0, lines)
        return "\n".join(lines) + "\n"

    def _render(self, node: Node, depth: int, lines: list[str]) -> None:
        indent = INDENT * (depth + 1)
        total_time = self.average(node)
        if depth == 0:
            lines.append(node.name)

        children = self.children_of(node)
        if total_time < NEGLIGIBLE_TIME:
            for child in children:
                lines.append(f"{indent}{self.average(child):6.2f} {child.name}")
                self._render(child, depth + 1, lines)
            return

        unit, scale = "s", 1.0
        if total_time < MS_THRESHOLD:
            unit, scale = "ms", 1000.0

        unaccounted = total_time
        for child in children:
            child_time = self.average(child)
            lines.append(
                f"{indent}{child_time * scale:6.2f}{unit} "
                f"{child_time * 100.0 / total_time:4.1f}%  {child.name}"
            )
            self._render(child, depth + 1, lines)
            unaccounted -= child_time

        if children and unaccounted > total_time * UNACCOUNTED_FRACTION:
            lines.append(
                f"{indent}{unaccounted * scale:6.2f}{unit} "
                f"{unaccounted * 100.0 / total_time:4.1f}%  {UNACCOUNTED_LABEL}"
            )

    def print_report(self, file: TextIO | None = None) -> None:
        """Write the rendered report to ``file`` (stdout by default)."""
        out = file if file is not None else sys.stdout
        out.write(self.render())
        out.flush()

    @beartype
    def log_report(self, title: str = "PROFILER REPORT") -> None:
        """Log the rendered report via loguru, one record per line.

        Useful when stdout is not watched but the host's log sinks are.
        """
        if not self.root.children:
            logger.info(f"[{title}] No profiling data yet")
            return

        logger.info(f"[{title}]")
        for line in self.render().splitlines():
            logger.info(line)


class ScopedRegion:
    """Handle for one open timed region of a ProfilerRecords tree.

    Construction starts the clock and descends into the child named ``label``.
    stop() (or leaving the ``with`` block) records the elapsed time on that
    node and ascends back to the parent.

    Args:
        records: Tree that receives the sample
        label: Region name (must be non-empty)

    Attributes:
        start_time: Clock reading at construction
        elapsed: Measured duration in seconds (0.0 until stopped)
        stopped: True once the sample has been recorded

    Example:
        with ScopedRegion(records, "solve") as region:
            solve()
        print(f"solve took {region.elapsed:.3f}s")

    Design by Contract:
        - stop() at most once (AssertionError on the second call)
        - regions stop in reverse creation order (AssertionError otherwise)
        - the cursor returns to the parent even when the sample is rejected

    These checks are assert statements, like the rest of the contracts here,
    so they are skipped when Python runs with -O.
    """

    @beartype
    def __init__(self, records: ProfilerRecords, label: str) -> None:
        assert label, "Region label must be non-empty"
        self.records = records
        self.label = label
        self.stopped = False
        self.elapsed: float = 0.0
        self.start_time: float = records.clock()
        records.push(label)
        self._node = records.cursor.index

    def stop(self) -> float:
        """Record the elapsed time and leave the region.

        Returns:
            Elapsed seconds since construction.
        """
        assert not self.stopped, f"Profiler already stopped. (region {self.label!r})"
        assert self.records.cursor.index == self._node, (
            f"Region {self.label!r} stopped out of order: innermost open region "
            f"is {self.records.cursor.name!r}"
        )
        self.elapsed = float(self.records.clock() - self.start_time)
        try:
            self.records.insert_sample(self.elapsed)
        finally:
            self.records.pop()
            self.stopped = True
        return self.elapsed

    def __enter__(self) -> "ScopedRegion":
        return self

    def __exit__(self, *args: Any) -> None:
        if not self.stopped:
            self.stop()


@beartype
def create_profiler(
    root_name: str = DEFAULT_ROOT_NAME,
    clock: Callable[[], float] = time.perf_counter,
    initial_samples: int = 1,
) -> ProfilerRecords:
    """Create the long-lived tree a host application passes to its regions."""
    return ProfilerRecords(root_name, clock=clock, initial_samples=initial_samples)


@beartype
@contextmanager
def profile_scope(
    label: str,
    records: ProfilerRecords | None,
) -> Generator[ScopedRegion | None, None, None]:
    """Context manager that times the enclosed block as region ``label``.

    When records is None, the wrapped code still executes but nothing is recorded.
    This eliminates the need for ``if records:`` / ``else:`` branching at call sites.

    Yields:
        The open ScopedRegion, or None when records is None
    """
    if records is None:
        yield None
        return
    with ScopedRegion(records, label) as region:
        yield region


@beartype
def profiled(
    records: ProfilerRecords | None,
    name: str | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator running every call of the function inside a region.

    Args:
        records: Tree to record into, or None to leave the function untimed
        name: Region name (default: the function's __qualname__)
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        label = name or func.__qualname__

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            with profile_scope(label, records):
                return func(*args, **kwargs)

        return wrapper

    return decorator
