"""Device graphs: record once, instantiate, replay.

A ``Graph`` is an arena of node records addressed by integer ids. Nodes can
only depend on nodes already in the same graph, so every graph is a DAG in
insertion order. Two ways to fill one:

* explicit -- ``graph.add_*(..., deps=[...])``;
* capture -- ``stream.capture()`` returns a ``CaptureStream`` that turns each
  submission into a node depending on the previous one.

Both paths emit the same records, so the same sequence of operations always
yields the same graph. ``instantiate`` lowers the records to a driver graph
and returns an ``InstantiatedGraph`` that can be launched any number of times.

Memcpy and kernel nodes capture raw addresses. Everything those addresses
point into on the host (kernel argument storage, host memcpy buffers) is
owned by the graph and by every instantiation made from it; device memory
must stay mapped until the last launch that touches it has completed.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable, Union

import numpy as np

from gpu_runtime._driver import check, driver
from gpu_runtime.collective import CollectiveCall
from gpu_runtime.errors import GraphError
from gpu_runtime.jit import KernelFn, KernelParams, LaunchConfig
from gpu_runtime.memory import _check_same_size, device_nbytes, device_ptr, host_view

if TYPE_CHECKING:
    from gpu_runtime.context import Context, Stream

logger = logging.getLogger(__name__)


class MemoryKind(Enum):
    DEVICE = "device"
    HOST = "host"
    ARRAY = "array"


@dataclass(frozen=True)
class Memcpy3D:
    """3-D copy descriptor; ``width_in_bytes * height * depth`` bytes move.

    ``src`` / ``dst`` are a device address, a host address or a CUarray
    handle depending on the matching kind.
    """

    src_kind: MemoryKind = MemoryKind.DEVICE
    src: int = 0
    src_x_in_bytes: int = 0
    src_y: int = 0
    src_z: int = 0
    src_pitch: int = 0
    src_height: int = 0
    dst_kind: MemoryKind = MemoryKind.DEVICE
    dst: int = 0
    dst_x_in_bytes: int = 0
    dst_y: int = 0
    dst_z: int = 0
    dst_pitch: int = 0
    dst_height: int = 0
    width_in_bytes: int = 0
    height: int = 1
    depth: int = 1

    @classmethod
    def linear(cls, src_kind: MemoryKind, src: int, dst_kind: MemoryKind, dst: int, nbytes: int) -> Memcpy3D:
        return cls(src_kind=src_kind, src=src, dst_kind=dst_kind, dst=dst, width_in_bytes=nbytes)

    @property
    def nbytes(self) -> int:
        return self.width_in_bytes * self.height * self.depth

    def to_driver(self):
        p = driver.CUDA_MEMCPY3D()
        _set_side(p, "src", self.src_kind, self.src)
        p.srcXInBytes = self.src_x_in_bytes
        p.srcY = self.src_y
        p.srcZ = self.src_z
        p.srcLOD = 0
        p.srcPitch = self.src_pitch
        p.srcHeight = self.src_height
        _set_side(p, "dst", self.dst_kind, self.dst)
        p.dstXInBytes = self.dst_x_in_bytes
        p.dstY = self.dst_y
        p.dstZ = self.dst_z
        p.dstLOD = 0
        p.dstPitch = self.dst_pitch
        p.dstHeight = self.dst_height
        p.WidthInBytes = self.width_in_bytes
        p.Height = self.height
        p.Depth = self.depth
        return p


def _set_side(p, side: str, kind: MemoryKind, addr: int) -> None:
    types = driver.CUmemorytype
    if kind is MemoryKind.DEVICE:
        setattr(p, f"{side}MemoryType", types.CU_MEMORYTYPE_DEVICE)
        setattr(p, f"{side}Device", driver.CUdeviceptr(addr))
    elif kind is MemoryKind.HOST:
        setattr(p, f"{side}MemoryType", types.CU_MEMORYTYPE_HOST)
        setattr(p, f"{side}Host", addr)
    else:
        setattr(p, f"{side}MemoryType", types.CU_MEMORYTYPE_ARRAY)
        setattr(p, f"{side}Array", driver.CUarray(addr))


# ---------------------------------------------------------------------------
# Node records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EmptyNode:
    pass


@dataclass(frozen=True)
class MemcpyNode:
    """Copy descriptor plus the host objects its addresses point into."""

    params: Memcpy3D
    owned: tuple = field(default=(), compare=False, repr=False)


@dataclass(frozen=True)
class KernelNode:
    kernel: KernelFn
    config: LaunchConfig
    params: KernelParams


@dataclass(frozen=True)
class CollectiveNode:
    call: CollectiveCall


NodeSpec = Union[EmptyNode, MemcpyNode, KernelNode, CollectiveNode]


@dataclass(frozen=True, eq=False)
class GraphNode:
    """Handle to a node of one ``Graph``; ``deps`` are ids in the same graph."""

    graph_id: int
    id: int
    spec: NodeSpec
    deps: tuple[int, ...]

    @property
    def kind(self) -> str:
        return type(self.spec).__name__[: -len("Node")].lower()

    @property
    def params(self) -> Memcpy3D:
        if not isinstance(self.spec, MemcpyNode):
            raise GraphError(f"Node {self.id} is a {self.kind} node, not a memcpy node")
        return self.spec.params

    def __repr__(self) -> str:
        return f"GraphNode({self.id}, {self.kind}, deps={list(self.deps)})"


class GraphState(Enum):
    OPEN = "open"
    INSTANTIATED = "instantiated"
    DESTROYED = "destroyed"


class Graph:
    """Arena of device work with explicit dependencies."""

    _ids = itertools.count()

    def __init__(self):
        self._id = next(Graph._ids)
        self._nodes: list[GraphNode] = []
        self._instantiations = 0
        self._destroyed = False

    @property
    def state(self) -> GraphState:
        if self._destroyed:
            return GraphState.DESTROYED
        return GraphState.INSTANTIATED if self._instantiations else GraphState.OPEN

    def _check_alive(self) -> None:
        if self._destroyed:
            raise GraphError("Graph has been destroyed")

    def _resolve_deps(self, deps: Iterable[GraphNode]) -> tuple[int, ...]:
        ids: list[int] = []
        for dep in deps:
            if (
                not isinstance(dep, GraphNode)
                or dep.graph_id != self._id
                or dep.id >= len(self._nodes)
                or self._nodes[dep.id] is not dep
            ):
                raise GraphError(f"Dependency {dep!r} does not belong to this graph")
            if dep.id not in ids:
                ids.append(dep.id)
        return tuple(ids)

    def _add(self, spec: NodeSpec, deps: Iterable[GraphNode]) -> GraphNode:
        self._check_alive()
        node = GraphNode(self._id, len(self._nodes), spec, self._resolve_deps(deps))
        self._nodes.append(node)
        logger.debug("graph %d: added %r", self._id, node)
        return node

    # -- node constructors --------------------------------------------------

    def add_empty_node(self, deps: Iterable[GraphNode] = ()) -> GraphNode:
        return self._add(EmptyNode(), deps)

    def add_memcpy_node_with_params(self, params: Memcpy3D, deps: Iterable[GraphNode] = (),
                                    *owned: Any) -> GraphNode:
        return self._add(MemcpyNode(params, owned), deps)

    def add_memcpy_node(self, node: GraphNode, deps: Iterable[GraphNode] = ()) -> GraphNode:
        """Copy an existing memcpy node (of any graph) along with the host buffers it owns."""
        params = node.params
        return self.add_memcpy_node_with_params(params, deps, *node.spec.owned)

    def add_memcpy_d2d(self, dst, src, deps: Iterable[GraphNode] = ()) -> GraphNode:
        n = device_nbytes(dst)
        _check_same_size(n, device_nbytes(src))
        params = Memcpy3D.linear(MemoryKind.DEVICE, device_ptr(src), MemoryKind.DEVICE, device_ptr(dst), n)
        return self.add_memcpy_node_with_params(params, deps)

    def add_memcpy_h2d(self, dst, host: np.ndarray, deps: Iterable[GraphNode] = ()) -> GraphNode:
        src = host_view(host)
        _check_same_size(device_nbytes(dst), src.nbytes)
        params = Memcpy3D.linear(MemoryKind.HOST, src.ctypes.data, MemoryKind.DEVICE, device_ptr(dst), src.nbytes)
        return self.add_memcpy_node_with_params(params, deps, host)

    def add_memcpy_d2h(self, host: np.ndarray, src, deps: Iterable[GraphNode] = ()) -> GraphNode:
        dst = host_view(host)
        if not dst.flags.writeable:
            raise ValueError("Host destination is read-only")
        _check_same_size(dst.nbytes, device_nbytes(src))
        params = Memcpy3D.linear(MemoryKind.DEVICE, device_ptr(src), MemoryKind.HOST, dst.ctypes.data, dst.nbytes)
        return self.add_memcpy_node_with_params(params, deps, host)

    def add_kernel_node(self, kernel: KernelFn, grid, block, shared: int, params,
                        deps: Iterable[GraphNode] = ()) -> GraphNode:
        config = LaunchConfig.of(grid, block, shared)
        return self._add(KernelNode(kernel, config, KernelParams.of(params)), deps)

    def add_collective_node(self, call: CollectiveCall, deps: Iterable[GraphNode] = ()) -> GraphNode:
        return self._add(CollectiveNode(call), deps)

    # -- inspection ---------------------------------------------------------

    def nodes(self) -> tuple[GraphNode, ...]:
        self._check_alive()
        return tuple(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def dependencies(self, node: GraphNode) -> tuple[GraphNode, ...]:
        self._resolve_deps([node])
        return tuple(self._nodes[i] for i in node.deps)

    def edges(self) -> list[tuple[int, int]]:
        return [(d, n.id) for n in self._nodes for d in n.deps]

    def structure(self) -> list[tuple[NodeSpec, tuple[int, ...]]]:
        """Node records and dependency ids, comparable across graphs."""
        return [(n.spec, n.deps) for n in self._nodes]

    def destroy(self) -> None:
        """Drop node records; instantiations and copied nodes keep the host buffers they use."""
        self._nodes.clear()
        self._destroyed = True

    def __repr__(self) -> str:
        return f"Graph(id={self._id}, nodes={len(self._nodes)}, state={self.state.value})"


# ---------------------------------------------------------------------------
# Stream capture
# ---------------------------------------------------------------------------


class CaptureStream:
    """Records stream submissions into a ``Graph`` in stream order."""

    def __init__(self, stream: Stream | None = None):
        self.stream = stream
        self.graph = Graph()
        self._last: GraphNode | None = None
        self._ended = False

    def _deps(self) -> tuple[GraphNode, ...]:
        if self._ended:
            raise GraphError("Capture has already ended")
        return (self._last,) if self._last is not None else ()

    def _push(self, node: GraphNode) -> GraphNode:
        self._last = node
        return node

    def memcpy_d2d(self, dst, src) -> GraphNode:
        return self._push(self.graph.add_memcpy_d2d(dst, src, self._deps()))

    def memcpy_h2d(self, dst, host: np.ndarray) -> GraphNode:
        return self._push(self.graph.add_memcpy_h2d(dst, host, self._deps()))

    def memcpy_d2h(self, host: np.ndarray, src) -> GraphNode:
        return self._push(self.graph.add_memcpy_d2h(host, src, self._deps()))

    def memcpy(self, params: Memcpy3D) -> GraphNode:
        return self._push(self.graph.add_memcpy_node_with_params(params, self._deps()))

    def launch(self, kernel: KernelFn, grid, block, shared: int, params) -> GraphNode:
        return self._push(self.graph.add_kernel_node(kernel, grid, block, shared, params, self._deps()))

    def collective(self, call: CollectiveCall) -> GraphNode:
        return self._push(self.graph.add_collective_node(call, self._deps()))

    def end(self) -> Graph:
        self._ended = True
        return self.graph

    def __enter__(self) -> CaptureStream:
        return self

    def __exit__(self, *exc) -> None:
        self._ended = True


# ---------------------------------------------------------------------------
# Instantiation
# ---------------------------------------------------------------------------


def _lower_node(cu_graph, node: GraphNode, deps: list, ctx: Context):
    spec = node.spec
    n = len(deps)
    if isinstance(spec, EmptyNode) or (isinstance(spec, MemcpyNode) and spec.params.nbytes == 0):
        return check(driver.cuGraphAddEmptyNode(cu_graph, deps, n), "cuGraphAddEmptyNode")
    if isinstance(spec, MemcpyNode):
        return check(
            driver.cuGraphAddMemcpyNode(cu_graph, deps, n, spec.params.to_driver(), ctx.handle),
            "cuGraphAddMemcpyNode",
        )
    if isinstance(spec, KernelNode):
        p = driver.CUDA_KERNEL_NODE_PARAMS()
        p.func = spec.kernel.handle
        p.gridDimX, p.gridDimY, p.gridDimZ = spec.config.grid
        p.blockDimX, p.blockDimY, p.blockDimZ = spec.config.block
        p.sharedMemBytes = spec.config.shared
        ptrs = spec.params.ptrs()
        p.kernelParams = ptrs.address
        p.extra = 0
        return check(driver.cuGraphAddKernelNode(cu_graph, deps, n, p), "cuGraphAddKernelNode")
    if isinstance(spec, CollectiveNode):
        child = spec.call.capture()
        try:
            return check(driver.cuGraphAddChildGraphNode(cu_graph, deps, n, child), "cuGraphAddChildGraphNode")
        finally:
            driver.cuGraphDestroy(child)
    raise GraphError(f"Unknown node record {spec!r}")


def instantiate(graph: Graph, ctx: Context) -> InstantiatedGraph:
    """Lower ``graph`` to the driver and build an executable instance."""
    nodes = graph.nodes()
    keepalive = [n.spec for n in nodes]
    with ctx:
        cu_graph = check(driver.cuGraphCreate(0), "cuGraphCreate")
        try:
            handles = []
            for node in nodes:
                handles.append(_lower_node(cu_graph, node, [handles[i] for i in node.deps], ctx))
            exec_ = check(driver.cuGraphInstantiate(cu_graph, 0), "cuGraphInstantiate")
        finally:
            driver.cuGraphDestroy(cu_graph)
    graph._instantiations += 1
    logger.info("instantiated graph %d with %d nodes", graph._id, len(nodes))
    return InstantiatedGraph(exec_, ctx, keepalive, len(nodes))


class InstantiatedState(Enum):
    READY = "ready"
    LAUNCHED = "launched"
    DESTROYED = "destroyed"


class InstantiatedGraph:
    """Executable graph; independent of the ``Graph`` it came from."""

    def __init__(self, handle, ctx: Context, keepalive: list, node_count: int):
        self._handle = handle
        self._ctx = ctx
        self._keepalive = keepalive
        self.node_count = node_count
        self.launches = 0
        self.state = InstantiatedState.READY

    def launch(self, stream: Stream) -> None:
        if self.state is InstantiatedState.DESTROYED:
            raise GraphError("Instantiated graph has been destroyed")
        with self._ctx:
            check(driver.cuGraphLaunch(self._handle, stream.handle), "cuGraphLaunch")
        self.launches += 1
        self.state = InstantiatedState.LAUNCHED

    def destroy(self) -> None:
        """Release the executable; the caller synchronizes outstanding launches first."""
        if self.state is InstantiatedState.DESTROYED:
            return
        with self._ctx:
            check(driver.cuGraphExecDestroy(self._handle), "cuGraphExecDestroy")
        self._handle = None
        self._keepalive = []
        self.state = InstantiatedState.DESTROYED

    def __enter__(self) -> InstantiatedGraph:
        return self

    def __exit__(self, *exc) -> None:
        self.destroy()

    def __repr__(self) -> str:
        return f"InstantiatedGraph(nodes={self.node_count}, state={self.state.value})"
