"""Abstract compute graph and the builder that assembles it.

The builder walks a model description in definition order. Each operator
call is resolved by name in the registry, its outputs are typed from its
inputs, and the result is recorded as a node whose input edges all exist
already, so ``topo`` is a valid topological order by construction.

Model descriptions implement ``launch(ctx, inputs) -> outputs`` against a
``BuildContext``; ``ModelDesc`` is a declarative description that can be
loaded from a dict.
"""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping, Protocol, Sequence

from nn_graph.dim import Dim, DimLike
from nn_graph.dtype import DType
from nn_graph.errors import GraphBuildError, OperatorUnknown, ShapeInferenceError
from nn_graph.ops import BUILTIN_OPS, AttentionArg, Operator, SplitArg
from nn_graph.tensor import Edge, External, TensorMeta

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OpNode:
    op: str
    name: str
    arg: Any = None


@dataclass(frozen=True)
class Topo:
    inputs: tuple[int, ...]
    outputs: tuple[int, ...]


@dataclass
class Graph:
    """Build result. ``topo[i]`` lists the edge ids consumed/produced by ``nodes[i]``."""

    topo: list[Topo]
    nodes: list[OpNode]
    edges: list[Edge]
    inputs: list[int] = field(default_factory=list)
    outputs: list[int] = field(default_factory=list)

    def weight_edges(self) -> Iterator[tuple[int, Edge]]:
        for i, edge in enumerate(self.edges):
            if edge.is_weight:
                yield i, edge

    def free_vars(self) -> frozenset[str]:
        return frozenset().union(*(e.meta.free_vars() for e in self.edges))

    def substitute(self, env: Mapping[str, DimLike]) -> list[Edge]:
        """Edges with shape variables replaced; the graph itself is unchanged."""
        return [Edge(e.name, e.meta.substitute(env), e.external) for e in self.edges]

    def check_topological(self) -> None:
        produced = set(self.inputs)
        produced.update(i for i, e in enumerate(self.edges) if e.is_weight)
        for node, topo in zip(self.nodes, self.topo):
            missing = [i for i in topo.inputs if i not in produced]
            if missing:
                raise GraphBuildError(
                    f"Node '{node.name}' consumes edges {missing} before they are produced"
                )
            produced.update(topo.outputs)

    def summary(self) -> str:
        lines = []
        for i, (node, topo) in enumerate(zip(self.nodes, self.topo)):
            lines.append(
                f"{i:>3}. {node.op:10} {node.name:40} {list(topo.outputs)} <- {list(topo.inputs)}"
            )
        return "\n".join(lines)


class Model(Protocol):
    def launch(self, ctx: BuildContext, inputs: list[int]) -> list[int]:
        ...


class BuildContext:
    """Mutable state of one ``GraphBuilder.build`` call."""

    def __init__(self, ops: Mapping[str, Operator]):
        self._ops = ops
        self._scope: list[str] = []
        self.edges: list[Edge] = []
        self.nodes: list[OpNode] = []
        self.topo: list[Topo] = []

    def _qualify(self, name: str) -> str:
        return ".".join([*self._scope, name])

    @contextlib.contextmanager
    def scope(self, name: str):
        """Prefix node and edge names created inside the block with ``name``."""
        self._scope.append(name)
        try:
            yield self
        finally:
            self._scope.pop()

    def meta(self, edge_id: int) -> TensorMeta:
        return self.edges[edge_id].meta

    def add_edge(self, name: str, meta: TensorMeta, external: External | None = None) -> int:
        self.edges.append(Edge(name, meta, external))
        return len(self.edges) - 1

    def load_external(self, name: str, meta: TensorMeta, item: str | None = None) -> int:
        """Declare a weight edge backed by container entry ``item`` (default: ``name``)."""
        qualified = self._qualify(name)
        return self.add_edge(qualified, meta, External(qualified, item or name))

    def call(self, name: str, op: str, inputs: Sequence[int], arg: Any = None) -> list[int]:
        qualified = self._qualify(name)
        impl = self._ops.get(op)
        if impl is None:
            raise OperatorUnknown(op, qualified)
        for i in inputs:
            if not 0 <= i < len(self.edges):
                raise GraphBuildError(f"Node '{qualified}' refers to unknown edge {i}")

        try:
            metas = impl.infer([self.edges[i].meta for i in inputs], arg)
        except ShapeInferenceError as e:
            raise ShapeInferenceError(qualified, e.message) from None
        except (ArithmeticError, IndexError, TypeError, ValueError) as e:
            raise ShapeInferenceError(qualified, f"{op}: {e}") from e

        outputs = []
        for j, meta in enumerate(metas):
            suffix = "" if len(metas) == 1 else f":{j}"
            outputs.append(self.add_edge(f"{qualified}{suffix}", meta))
        self.nodes.append(OpNode(op, qualified, arg))
        self.topo.append(Topo(tuple(inputs), tuple(outputs)))
        logger.debug("node %s %s %s <- %s", op, qualified, outputs, list(inputs))
        return outputs


class GraphBuilder:
    """String-keyed operator registry plus the graph build entry point."""

    def __init__(self):
        self._ops: dict[str, Operator] = {}

    def register_op(self, name: str, op: Operator) -> GraphBuilder:
        self._ops[name] = op
        return self

    @property
    def ops(self) -> frozenset[str]:
        return frozenset(self._ops)

    def build(self, model: Model, inputs: Sequence[TensorMeta]) -> Graph:
        ctx = BuildContext(self._ops)
        input_ids = [ctx.add_edge(f"input{i}", meta) for i, meta in enumerate(inputs)]
        outputs = model.launch(ctx, list(input_ids))
        graph = Graph(
            topo=ctx.topo,
            nodes=ctx.nodes,
            edges=ctx.edges,
            inputs=input_ids,
            outputs=list(outputs),
        )
        logger.info("built graph: %d nodes, %d edges", len(graph.nodes), len(graph.edges))
        return graph


def default_builder() -> GraphBuilder:
    builder = GraphBuilder()
    for name, op in BUILTIN_OPS.items():
        builder.register_op(name, op)
    return builder


# ---------------------------------------------------------------------------
# Declarative model description
# ---------------------------------------------------------------------------


@dataclass
class WeightDecl:
    name: str
    meta: TensorMeta
    item: str | None = None


@dataclass
class OpCall:
    """One operator invocation. ``inputs`` name model inputs, weights or
    earlier outputs (``"node"`` or ``"node:k"`` for multi-output nodes)."""

    name: str
    op: str
    inputs: list[str]
    arg: Any = None


@dataclass
class ModelDesc:
    name: str
    inputs: list[str]
    weights: list[WeightDecl]
    calls: list[OpCall]
    outputs: list[str] = field(default_factory=list)

    def launch(self, ctx: BuildContext, inputs: list[int]) -> list[int]:
        if len(inputs) != len(self.inputs):
            raise GraphBuildError(
                f"Model '{self.name}' takes {len(self.inputs)} inputs, got {len(inputs)}"
            )
        env: dict[str, int] = dict(zip(self.inputs, inputs))
        for w in self.weights:
            env[w.name] = ctx.load_external(w.name, w.meta, w.item)

        for call in self.calls:
            try:
                ids = [env[name] for name in call.inputs]
            except KeyError as e:
                raise GraphBuildError(f"Node '{call.name}' refers to unknown tensor {e.args[0]!r}") from None
            outs = ctx.call(call.name, call.op, ids, call.arg)
            if len(outs) == 1:
                env[call.name] = outs[0]
            for k, edge_id in enumerate(outs):
                env[f"{call.name}:{k}"] = edge_id

        outputs = self.outputs or ([self.calls[-1].name] if self.calls else [])
        return [env[name] for name in outputs]


def _parse_dim(d) -> Dim:
    if isinstance(d, str):
        return Dim.var(d)
    return Dim.of(d)


def _parse_meta(d: dict) -> TensorMeta:
    return TensorMeta(DType.parse(d["dtype"]), [_parse_dim(x) for x in d["shape"]])


_ARG_PARSERS = {
    "split": lambda a: SplitArg(axis=a.get("axis", -1), parts=tuple(a["parts"])),
    "attention": lambda a: AttentionArg(nh=a["nh"], nkvh=a["nkvh"]),
}


def load_model_from_dict(data: dict) -> tuple[ModelDesc, list[TensorMeta]]:
    """Load a declarative model and its input metas.

    Shapes hold integers or variable names; ``{"dtype": "U32", "shape": ["n"]}``
    is a token vector of symbolic length ``n``.
    """
    inputs = data["inputs"]
    weights = [
        WeightDecl(name=w["name"], meta=_parse_meta(w), item=w.get("item"))
        for w in data.get("weights", [])
    ]
    calls = []
    for c in data["calls"]:
        arg = c.get("arg")
        parser = _ARG_PARSERS.get(c["op"])
        if parser is not None and isinstance(arg, dict):
            arg = parser(arg)
        calls.append(OpCall(name=c["name"], op=c["op"], inputs=list(c["inputs"]), arg=arg))
    model = ModelDesc(
        name=data.get("name", "unknown"),
        inputs=[i["name"] for i in inputs],
        weights=weights,
        calls=calls,
        outputs=list(data.get("outputs", [])),
    )
    return model, [_parse_meta(i) for i in inputs]
