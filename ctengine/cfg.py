"""
Control-flow graph utilities over IR functions

Provides:
- ControlFlowGraph: successor/predecessor maps, exits, reverse post-order
- DominatorTree / PostDominatorTree: Cooper-Harvey-Kennedy iterative idoms
- NaturalLoop detection from back edges
- Reachability queries with an avoided block set
"""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from .ir import Function

# Synthetic sink joining every exit block, root of the post-dominator tree
VIRTUAL_EXIT = "<exit>"


class ControlFlowGraph:
    """Block-level CFG of a single function"""

    def __init__(self, function: Function):
        self.function = function
        self.entry: str = function.entry.id
        self.successors: Dict[str, Tuple[str, ...]] = {}
        self.predecessors: Dict[str, List[str]] = defaultdict(list)

        for block in function.blocks:
            succs = function.successors(block.id)
            self.successors[block.id] = succs
            for succ in succs:
                self.predecessors[succ].append(block.id)

        self.exits: Tuple[str, ...] = tuple(
            b.id for b in function.blocks if function.is_exit(b.id)
        )
        self.reachable: FrozenSet[str] = frozenset(self.reachable_from(self.entry))
        self._rpo: Optional[List[str]] = None

    @property
    def blocks(self) -> List[str]:
        return [b.id for b in self.function.blocks]

    def succs(self, block_id: str) -> Tuple[str, ...]:
        return self.successors.get(block_id, ())

    def preds(self, block_id: str) -> List[str]:
        return self.predecessors.get(block_id, [])

    def reverse_post_order(self) -> List[str]:
        """Reachable blocks in reverse post-order from the entry"""
        if self._rpo is None:
            self._rpo = _reverse_post_order(self.entry, self.succs)
        return list(self._rpo)

    def reachable_from(self, start: Iterable[str] | str,
                       avoid: Optional[Set[str]] = None) -> Set[str]:
        """
        Blocks reachable from start without entering any block in avoid.

        Start blocks themselves are included unless they are avoided.
        """
        avoid = avoid or set()
        starts = [start] if isinstance(start, str) else list(start)
        seen: Set[str] = set()
        queue = deque(s for s in starts if s not in avoid)
        while queue:
            node = queue.popleft()
            if node in seen:
                continue
            seen.add(node)
            for succ in self.succs(node):
                if succ not in seen and succ not in avoid:
                    queue.append(succ)
        return seen

    def reaching(self, targets: Iterable[str],
                 avoid: Optional[Set[str]] = None) -> Set[str]:
        """Blocks from which some target is reachable without entering avoid"""
        avoid = avoid or set()
        seen: Set[str] = set()
        queue = deque(t for t in targets if t not in avoid)
        while queue:
            node = queue.popleft()
            if node in seen:
                continue
            seen.add(node)
            for pred in self.preds(node):
                if pred not in seen and pred not in avoid:
                    queue.append(pred)
        return seen


def _reverse_post_order(root: str, successors: Callable[[str], Iterable[str]]) -> List[str]:
    """Iterative DFS post-order, reversed"""
    finished: List[str] = []
    visited = {root}
    stack = [(root, iter(successors(root)))]
    while stack:
        node, children = stack[-1]
        for child in children:
            if child not in visited:
                visited.add(child)
                stack.append((child, iter(successors(child))))
                break
        else:
            stack.pop()
            finished.append(node)
    finished.reverse()
    return finished


def _immediate_dominators(root: str,
                          successors: Callable[[str], Iterable[str]],
                          predecessors: Callable[[str], Iterable[str]]) -> Dict[str, str]:
    """
    Cooper, Harvey, Kennedy - "A Simple, Fast Dominance Algorithm".

    The root's immediate dominator is itself. Nodes unreachable from the
    root are absent from the result.
    """
    order = _reverse_post_order(root, successors)
    rpo_num = {node: i for i, node in enumerate(order)}
    idom: Dict[str, str] = {root: root}

    def intersect(a: str, b: str) -> str:
        while a != b:
            while rpo_num[a] > rpo_num[b]:
                a = idom[a]
            while rpo_num[b] > rpo_num[a]:
                b = idom[b]
        return a

    changed = True
    while changed:
        changed = False
        for node in order[1:]:
            preds = [p for p in predecessors(node) if p in idom]
            if not preds:
                continue
            new_idom = preds[0]
            for pred in preds[1:]:
                new_idom = intersect(pred, new_idom)
            if idom.get(node) != new_idom:
                idom[node] = new_idom
                changed = True
    return idom


class _Tree:
    """Shared queries over an immediate-dominator map"""

    def __init__(self, idom: Dict[str, str]):
        self.idom = idom

    def dominates(self, a: str, b: str) -> bool:
        """True if a (post-)dominates b. A node dominates itself."""
        if b not in self.idom or a not in self.idom:
            return False
        cur = b
        while True:
            if cur == a:
                return True
            parent = self.idom[cur]
            if parent == cur:
                return False
            cur = parent

    def strictly_dominates(self, a: str, b: str) -> bool:
        return a != b and self.dominates(a, b)

    def immediate(self, node: str) -> Optional[str]:
        """Immediate (post-)dominator, None for the root and unknown nodes"""
        parent = self.idom.get(node)
        if parent is None or parent == node:
            return None
        return parent

    def all_dominators(self, node: str) -> Set[str]:
        result: Set[str] = set()
        if node not in self.idom:
            return result
        cur = node
        while True:
            result.add(cur)
            parent = self.idom[cur]
            if parent == cur:
                return result
            cur = parent


class DominatorTree(_Tree):
    """Dominator tree rooted at the function entry"""

    def __init__(self, cfg: ControlFlowGraph):
        self.cfg = cfg
        super().__init__(_immediate_dominators(cfg.entry, cfg.succs, cfg.preds))


class PostDominatorTree(_Tree):
    """
    Post-dominator tree: the dominator tree of the reversed CFG, rooted at a
    virtual exit that every exit block flows into. Blocks that cannot reach
    an exit are absent from the tree.
    """

    def __init__(self, cfg: ControlFlowGraph):
        self.cfg = cfg
        exits = set(cfg.exits)

        def rev_succs(node: str) -> Iterable[str]:
            if node == VIRTUAL_EXIT:
                return list(cfg.exits)
            return cfg.preds(node)

        def rev_preds(node: str) -> Iterable[str]:
            succs = list(cfg.succs(node))
            if node in exits:
                succs.append(VIRTUAL_EXIT)
            return succs

        super().__init__(_immediate_dominators(VIRTUAL_EXIT, rev_succs, rev_preds))

    def post_dominates(self, a: str, b: str) -> bool:
        return self.dominates(a, b)


@dataclass(frozen=True)
class NaturalLoop:
    """A natural loop identified by its header"""
    header: str
    latches: Tuple[str, ...]
    body: FrozenSet[str]

    def exiting_blocks(self, cfg: ControlFlowGraph) -> List[str]:
        """Blocks in the loop with a successor outside it, in block order"""
        return [b for b in cfg.blocks
                if b in self.body and any(s not in self.body for s in cfg.succs(b))]


def find_natural_loops(cfg: ControlFlowGraph,
                       dom: Optional[DominatorTree] = None) -> List[NaturalLoop]:
    """Natural loops from back edges (t -> h where h dominates t), merged per header"""
    dom = dom or DominatorTree(cfg)
    latches_by_header: Dict[str, List[str]] = defaultdict(list)
    for block in cfg.reverse_post_order():
        for succ in cfg.succs(block):
            if dom.dominates(succ, block):
                latches_by_header[succ].append(block)

    loops = []
    for header in cfg.blocks:
        latches = latches_by_header.get(header)
        if not latches:
            continue
        body = {header}
        stack = [l for l in latches if l != header]
        while stack:
            node = stack.pop()
            if node in body:
                continue
            body.add(node)
            stack.extend(p for p in cfg.preds(node) if p not in body and p in cfg.reachable)
        loops.append(NaturalLoop(header, tuple(latches), frozenset(body)))
    return loops
