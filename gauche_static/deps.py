"""Load tree reconstruction and dependency-safe ordering.

The trace only records nesting through indentation. :func:`build_forest`
turns that into explicit :class:`LoadNode` trees and :func:`linearize` flattens
them so that everything a module loaded comes before the module itself.
"""

from dataclasses import dataclass, field
from typing import Iterator, Sequence


@dataclass(slots=True)
class LoadNode:
    """A text module and the modules loaded while it was loading.

    :ivar identifier: Module path.
    :ivar children: Nested loads, in trace order.
    """

    identifier: str
    children: list["LoadNode"] = field(default_factory=list)


def build_forest(entries: Sequence[tuple[int, str]]) -> list[LoadNode]:
    """Rebuild the load forest from ``(depth, identifier)`` pairs.

    :param entries: Leveled module identifiers in trace order.
    :returns: Root nodes in trace order (empty for empty input).
    """

    forest: list[LoadNode]
    pos: int
    forest, pos = _build_level(entries, 0, 0)
    if pos != len(entries):
        raise AssertionError(f"Internal error: forest build stopped at {pos}/{len(entries)}")
    return forest


def _build_level(
    entries: Sequence[tuple[int, str]],
    pos: int,
    level: int,
) -> tuple[list[LoadNode], int]:
    """Collect the siblings at ``level`` starting at ``pos``.

    :param entries: Leveled module identifiers.
    :param pos: Index of the first entry to consume.
    :param level: Depth of the sibling list being built.
    :returns: ``(nodes, next_pos)`` where ``next_pos`` is the first entry
        shallower than ``level`` (or the end of input).
    """

    nodes: list[LoadNode] = []
    while pos < len(entries):
        depth: int = entries[pos][0]
        if depth < level:
            break
        if depth == level:
            nodes.append(LoadNode(identifier=entries[pos][1]))
            pos += 1
            continue

        sub: list[LoadNode]
        sub, pos = _build_level(entries, pos, depth)
        if len(nodes) > 0:
            nodes[-1].children.extend(sub)
        else:
            # Nothing at this level loaded them; keep them as siblings.
            nodes.extend(sub)
    return nodes, pos


def linearize(forest: Sequence[LoadNode]) -> list[str]:
    """Flatten a forest so every node follows all of its descendants.

    :param forest: Root nodes.
    :returns: Module identifiers in dependency-safe order.
    """

    order: list[str] = []
    for node in forest:
        order.extend(linearize(node.children))
        order.append(node.identifier)
    return order


def walk(forest: Sequence[LoadNode], level: int = 0) -> Iterator[tuple[int, LoadNode]]:
    """Yield ``(level, node)`` for every node, parents before children."""

    for node in forest:
        yield level, node
        yield from walk(node.children, level + 1)
