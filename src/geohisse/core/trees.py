"""
Tree structures for GeoHiSSE likelihood computation.

Trees are parsed once (dendropy, or the small built-in Newick reader) into
a flat, index-based TreeStructure that the pruning engine reads without
ever modifying.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

import numpy as np

logger = logging.getLogger(__name__)


class TreeStructureError(ValueError):
    """The tree or its tip data violates the engine's structural contract."""


@dataclass
class TreeNode:
    """
    Generic tree node representation.

    Attributes:
        id: Unique node identifier (index into TreeStructure.nodes)
        name: Node name (taxon label for tips)
        parent_id: ID of parent node (None for root)
        children_ids: List of child node IDs
        branch_length: Length of branch leading to this node
        is_tip: Whether this is a leaf node
    """
    id: int
    name: Optional[str] = None
    parent_id: Optional[int] = None
    children_ids: List[int] = field(default_factory=list)
    branch_length: float = 0.0
    is_tip: bool = False


@dataclass
class TreeStructure:
    """
    Extracted tree structure optimized for likelihood computation.

    Attributes:
        n_nodes: Total number of nodes
        n_tips: Number of tip nodes
        nodes: List of TreeNode objects, indexed by id
        tip_indices: Indices of tip nodes
        internal_indices: Indices of internal nodes
        root_index: Index of root node
        postorder: Node indices in postorder (tips first, root last)
        branch_lengths: Array of branch lengths indexed by node
        parent_indices: Array of parent indices (-1 for root)
        children_array: (n_internal, 3) rows of (parent, child1, child2) in postorder
        tip_names: List of tip names in order of tip_indices
    """
    n_nodes: int
    n_tips: int
    nodes: List[TreeNode]
    tip_indices: List[int]
    internal_indices: List[int]
    root_index: int
    postorder: List[int]
    branch_lengths: np.ndarray
    parent_indices: np.ndarray
    children_array: np.ndarray
    tip_names: List[str]

    @classmethod
    def from_newick(cls, newick: str, backend: str = "dendropy") -> "TreeStructure":
        """
        Parse a Newick string.

        Args:
            newick: Newick format tree string
            backend: "dendropy" or "simple"

        Raises:
            TreeStructureError: If the tree is not strictly bifurcating or
                has invalid branch lengths.
        """
        if backend == "dendropy":
            return cls._from_dendropy(newick)
        elif backend == "simple":
            return cls._from_simple(newick)
        raise ValueError(f"Unknown backend: {backend}")

    @classmethod
    def from_file(cls, filepath: Union[str, Path], backend: str = "dendropy") -> "TreeStructure":
        with open(filepath, "r") as f:
            newick = f.read().strip()
        return cls.from_newick(newick, backend=backend)

    @classmethod
    def _from_dendropy(cls, newick: str) -> "TreeStructure":
        import dendropy

        tree = dendropy.Tree.get(
            data=newick,
            schema="newick",
            rooting="force-rooted",
            preserve_underscores=True,
        )

        nodes = []
        node_to_idx = {}
        for i, node in enumerate(tree.postorder_node_iter()):
            node_to_idx[node] = i
            nodes.append(TreeNode(
                id=i,
                name=node.taxon.label if node.taxon else node.label,
                branch_length=node.edge_length if node.edge_length else 0.0,
                is_tip=node.is_leaf(),
            ))

        for node in tree.postorder_node_iter():
            idx = node_to_idx[node]
            if node.parent_node:
                nodes[idx].parent_id = node_to_idx[node.parent_node]
            for child in node.child_nodes():
                nodes[idx].children_ids.append(node_to_idx[child])

        return cls._build_from_nodes(nodes, node_to_idx[tree.seed_node])

    @classmethod
    def _from_simple(cls, newick: str) -> "TreeStructure":
        """Minimal Newick reader: nested groups, labels, quoted labels, lengths."""
        text = newick.strip()
        if text.endswith(";"):
            text = text[:-1]
        nodes: List[TreeNode] = []
        pos = 0

        def skip_space():
            nonlocal pos
            while pos < len(text) and text[pos].isspace():
                pos += 1

        def read_label() -> Optional[str]:
            nonlocal pos
            skip_space()
            if pos < len(text) and text[pos] == "'":
                end = text.find("'", pos + 1)
                if end < 0:
                    raise TreeStructureError("Unterminated quoted label in Newick string")
                label = text[pos + 1:end]
                pos = end + 1
                return label
            start = pos
            while pos < len(text) and text[pos] not in ",():;":
                pos += 1
            return text[start:pos].strip() or None

        def read_length() -> float:
            nonlocal pos
            skip_space()
            if pos >= len(text) or text[pos] != ":":
                return 0.0
            pos += 1
            start = pos
            while pos < len(text) and text[pos] not in ",();":
                pos += 1
            try:
                return float(text[start:pos])
            except ValueError:
                raise TreeStructureError(f"Bad branch length {text[start:pos]!r}")

        def read_node(parent_id: Optional[int]) -> int:
            nonlocal pos
            node = TreeNode(id=len(nodes), parent_id=parent_id)
            nodes.append(node)
            skip_space()
            if pos < len(text) and text[pos] == "(":
                pos += 1
                while True:
                    node.children_ids.append(read_node(node.id))
                    skip_space()
                    if pos < len(text) and text[pos] == ",":
                        pos += 1
                    elif pos < len(text) and text[pos] == ")":
                        pos += 1
                        break
                    else:
                        raise TreeStructureError(f"Malformed Newick string near position {pos}")
            else:
                node.is_tip = True
            node.name = read_label()
            node.branch_length = read_length()
            return node.id

        root_id = read_node(None)
        skip_space()
        if pos != len(text):
            raise TreeStructureError(f"Unexpected trailing text in Newick string: {text[pos:]!r}")
        return cls._build_from_nodes(nodes, root_id)

    @classmethod
    def _build_from_nodes(cls, nodes: List[TreeNode], root_index: int) -> "TreeStructure":
        """Build TreeStructure from list of nodes, enforcing a bifurcating tree."""
        nodes = sorted(nodes, key=lambda n: n.id)

        for n in nodes:
            if not n.is_tip and len(n.children_ids) != 2:
                raise TreeStructureError(
                    f"Node {n.id} ({n.name or 'unnamed'}) has {len(n.children_ids)} "
                    "children; the tree must be strictly bifurcating"
                )
        branch_lengths = np.array([n.branch_length for n in nodes], dtype=float)
        if not np.all(np.isfinite(branch_lengths)) or np.any(branch_lengths < 0):
            raise TreeStructureError("Branch lengths must be finite and non-negative")

        tip_indices = [n.id for n in nodes if n.is_tip]
        internal_indices = [n.id for n in nodes if not n.is_tip]
        tip_names = [nodes[i].name or f"tip_{i}" for i in tip_indices]
        if len(set(tip_names)) != len(tip_names):
            raise TreeStructureError("Tip names must be unique")

        parent_indices = np.array(
            [n.parent_id if n.parent_id is not None else -1 for n in nodes]
        )
        postorder = cls._compute_postorder(nodes, root_index)
        children_list = [
            [i, nodes[i].children_ids[0], nodes[i].children_ids[1]]
            for i in postorder
            if not nodes[i].is_tip
        ]
        children_array = (
            np.array(children_list, dtype=np.int32)
            if children_list
            else np.zeros((0, 3), dtype=np.int32)
        )

        return cls(
            n_nodes=len(nodes),
            n_tips=len(tip_indices),
            nodes=nodes,
            tip_indices=tip_indices,
            internal_indices=internal_indices,
            root_index=root_index,
            postorder=postorder,
            branch_lengths=branch_lengths,
            parent_indices=parent_indices,
            children_array=children_array,
            tip_names=tip_names,
        )

    @staticmethod
    def _compute_postorder(nodes: List[TreeNode], root_index: int) -> List[int]:
        result = []
        stack = [(root_index, False)]
        while stack:
            node_id, expanded = stack.pop()
            if expanded:
                result.append(node_id)
                continue
            stack.append((node_id, True))
            for child_id in reversed(nodes[node_id].children_ids):
                stack.append((child_id, False))
        return result

    def heights(self) -> np.ndarray:
        """Edge count from each node down to its deepest descendant tip."""
        heights = np.zeros(self.n_nodes, dtype=int)
        for node_id in self.postorder:
            children = self.nodes[node_id].children_ids
            if children:
                heights[node_id] = 1 + max(heights[c] for c in children)
        return heights

    def sibling(self, node_id: int) -> int:
        parent = self.nodes[node_id].parent_id
        if parent is None:
            raise ValueError("The root has no sibling")
        first, second = self.nodes[parent].children_ids
        return second if first == node_id else first

    def path_to_root(self, node_id: int) -> List[int]:
        """Node ids from ``node_id`` (inclusive) up to the root (inclusive)."""
        path = [node_id]
        while self.nodes[path[-1]].parent_id is not None:
            path.append(self.nodes[path[-1]].parent_id)
        return path

    def get_tip_index_map(self) -> Dict[str, int]:
        """Map tip names to their indices."""
        return {name: idx for idx, name in zip(self.tip_indices, self.tip_names)}

    def node_label(self, node_id: int) -> str:
        return self.nodes[node_id].name or f"node_{node_id}"

    def __repr__(self) -> str:
        return f"TreeStructure({self.n_tips} tips, {self.n_nodes} nodes)"


def load_tree(filepath: Union[str, Path], backend: str = "dendropy") -> TreeStructure:
    """
    Load a phylogenetic tree from a Newick file.

    Args:
        filepath: Path to Newick file
        backend: Parser backend ("dendropy" or "simple")
    """
    tree = TreeStructure.from_file(filepath, backend=backend)
    logger.info("Loaded %r from %s", tree, filepath)
    return tree
