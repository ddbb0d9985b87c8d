"""
Graph holds the "depends on" relation between the resources of a Bundle and
produces a deterministic dependency-first ordering
"""

# Standard
from typing import Dict, Iterator, List, Tuple

# First Party
import alog

# Local
from ..exceptions import CycleError, UnknownVertexError

log = alog.use_channel("DAG")

## Graph Class #################################################################


class Graph:
    """Directed graph of named vertices. An edge from -> to means that "from"
    depends on "to". Vertices and edges keep their insertion order so that the
    topological sort is reproducible for a given input sequence.
    """

    def __init__(self) -> None:
        # Dicts preserve insertion order; the values are ordered edge lists
        self.__edges: Dict[str, List[str]] = {}

    ## Modifiers ###############################################################

    def add_vertex(self, name: str):
        """Add a vertex. Adding an existing vertex is a no-op."""
        self.__edges.setdefault(name, [])

    def add_edge(self, from_: str, to: str):
        """Add a dependency edge between two existing vertices

        Args:
            from_:  str
                The dependent vertex, the one that must wait
            to:  str
                The dependency, the one that must come first

        Raises:
            UnknownVertexError: If either endpoint has not been added
        """
        for name in (from_, to):
            if name not in self.__edges:
                raise UnknownVertexError(name)
        edges = self.__edges[from_]
        if to not in edges:
            edges.append(to)

    ## Graph Functions #########################################################

    def topological_sort(self) -> List[str]:
        """Order the vertices so that every dependency comes before the
        vertices that depend on it. Vertices without a relative constraint keep
        their insertion order.

        Returns:
            order:  List[str]
                All vertex names, dependencies first

        Raises:
            CycleError: If the graph contains a cycle. The error carries the
                path of the cycle, starting and ending with the same vertex.
        """
        order = []
        finished = set()
        for start in self.__edges:
            if start in finished:
                continue

            # The current path is tracked both as a list (for reporting) and a
            # set (for lookups)
            path = [start]
            on_path = {start}
            stack: List[Tuple[str, Iterator[str]]] = [
                (start, iter(self.__edges[start]))
            ]
            while stack:
                vertex, children = stack[-1]
                child = next(children, None)
                if child is None:
                    stack.pop()
                    path.pop()
                    on_path.discard(vertex)
                    finished.add(vertex)
                    order.append(vertex)
                    continue
                if child in on_path:
                    cycle = path[path.index(child) :] + [child]
                    log.debug("Found cycle %s", cycle)
                    raise CycleError(cycle)
                if child in finished:
                    continue
                path.append(child)
                on_path.add(child)
                stack.append((child, iter(self.__edges[child])))

        log.debug3("Topological order: %s", order)
        return order

    ## Internal Functions ######################################################

    def __repr__(self):
        entries = [f"{name}:[{','.join(edges)}]" for name, edges in self.__edges.items()]
        return f"Graph({{{','.join(entries)}}})"

    def __contains__(self, name: str):
        return name in self.__edges

    def __len__(self):
        return len(self.__edges)
