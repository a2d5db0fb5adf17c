"""Tests for device graph recording (no device needed: recording is host-only)."""

import gc
import weakref

import numpy as np
import pytest

from gpu_runtime.errors import GraphError
from gpu_runtime.graph import (
    CaptureStream,
    EmptyNode,
    Graph,
    GraphState,
    KernelNode,
    Memcpy3D,
    MemcpyNode,
    MemoryKind,
)
from gpu_runtime.jit import KernelFn, KernelParams
from gpu_runtime.memory import DevSlice


def _kernel(name="scale"):
    return KernelFn(handle=None, name=name, module=None)


def _record_explicit(dst, src, host, kernel):
    graph = Graph()
    a = graph.add_memcpy_h2d(src, host)
    b = graph.add_kernel_node(kernel, 4, 256, 0, [dst, src, np.int32(1024)], deps=[a])
    graph.add_memcpy_d2d(dst[0:512], src[512:1024], deps=[b])
    return graph


def _record_captured(dst, src, host, kernel):
    capture = CaptureStream()
    capture.memcpy_h2d(src, host)
    capture.launch(kernel, 4, 256, 0, [dst, src, np.int32(1024)])
    capture.memcpy_d2d(dst[0:512], src[512:1024])
    return capture.end()


# ---------------------------------------------------------------------------
# 1. Recording
# ---------------------------------------------------------------------------


class TestGraphRecording:
    def test_capture_d2d_single_memcpy_node(self):
        dst, src = DevSlice(0x10000, 1024), DevSlice(0x20000, 1024)
        capture = CaptureStream()
        capture.memcpy_d2d(dst, src)
        graph = capture.end()

        (node,) = graph.nodes()
        assert isinstance(node.spec, MemcpyNode)
        assert node.kind == "memcpy"
        assert node.params.width_in_bytes == 1024
        assert node.params.src == 0x20000
        assert node.params.dst == 0x10000
        assert node.params.src_kind is MemoryKind.DEVICE

    def test_capture_matches_explicit(self):
        dst, src = DevSlice(0x10000, 4096), DevSlice(0x20000, 4096)
        host = np.arange(1024, dtype=np.float32)
        kernel = _kernel()
        explicit = _record_explicit(dst, src, host, kernel)
        captured = _record_captured(dst, src, host, kernel)
        assert explicit.structure() == captured.structure()
        assert explicit.edges() == [(0, 1), (1, 2)]

    def test_different_arguments_differ(self):
        dst = DevSlice(0x10000, 4096)
        kernel = _kernel()
        a = CaptureStream()
        a.launch(kernel, 1, 32, 0, [dst, np.int32(1)])
        b = CaptureStream()
        b.launch(kernel, 1, 32, 0, [dst, np.int32(2)])
        c = CaptureStream()
        c.launch(kernel, 1, 32, 0, [dst, np.int32(1)])
        assert a.end().structure() != b.end().structure()
        assert a.graph.structure() == c.end().structure()

    def test_h2d_descriptor(self):
        host = np.zeros(16, dtype=np.float32)
        graph = Graph()
        node = graph.add_memcpy_h2d(DevSlice(0x1000, 64), host)
        assert node.params.src_kind is MemoryKind.HOST
        assert node.params.src == host.ctypes.data
        assert node.params.nbytes == 64

    def test_d2h_requires_writeable(self):
        host = np.zeros(16, dtype=np.uint8)
        host.flags.writeable = False
        with pytest.raises(ValueError):
            Graph().add_memcpy_d2h(host, DevSlice(0x1000, 16))

    def test_size_mismatch(self):
        with pytest.raises(ValueError):
            Graph().add_memcpy_d2d(DevSlice(0x1000, 16), DevSlice(0x2000, 32))

    def test_with_params_is_authoritative(self):
        params = Memcpy3D(
            src=0x1000, src_pitch=256, src_height=4,
            dst=0x2000, dst_pitch=128, dst_height=4,
            width_in_bytes=128, height=4, depth=2,
        )
        node = Graph().add_memcpy_node_with_params(params)
        assert node.params == params
        assert node.params.nbytes == 128 * 4 * 2

    def test_add_memcpy_node_copies_params(self):
        a = Graph()
        first = a.add_memcpy_d2d(DevSlice(0x1000, 32), DevSlice(0x2000, 32))
        b = Graph()
        anchor = b.add_empty_node()
        copy = b.add_memcpy_node(first, deps=[anchor])
        assert copy.params == first.params
        assert copy.deps == (anchor.id,)

    def test_copied_node_owns_host_buffer(self):
        host = np.arange(16, dtype=np.float32)
        alive = weakref.ref(host)
        source = Graph()
        node = source.add_memcpy_h2d(DevSlice(0x1000, 64), host)
        copy = Graph().add_memcpy_node(node)

        del host, node
        source.destroy()
        gc.collect()
        assert alive() is not None
        assert copy.params.src == alive().ctypes.data

    def test_zero_byte_copy_is_legal(self):
        node = Graph().add_memcpy_d2d(DevSlice(0x1000, 0), DevSlice(0x2000, 0))
        assert node.params.nbytes == 0

    def test_kernel_node_owns_arguments(self):
        graph = Graph()
        node = graph.add_kernel_node(_kernel(), (2, 2), 64, 128, [np.int32(5)])
        assert isinstance(node.spec, KernelNode)
        assert node.spec.config.grid == (2, 2, 1)
        assert node.spec.config.shared == 128
        assert node.spec.params == KernelParams(np.int32(5))

    def test_params_of_non_memcpy_node(self):
        node = Graph().add_empty_node()
        assert isinstance(node.spec, EmptyNode)
        with pytest.raises(GraphError):
            _ = node.params


# ---------------------------------------------------------------------------
# 2. Dependencies and lifecycle
# ---------------------------------------------------------------------------


class TestGraphDependencies:
    def test_foreign_dependency_rejected(self):
        a, b = Graph(), Graph()
        foreign = a.add_empty_node()
        with pytest.raises(GraphError):
            b.add_empty_node(deps=[foreign])

    def test_non_node_dependency_rejected(self):
        with pytest.raises(GraphError):
            Graph().add_empty_node(deps=[0])

    def test_duplicate_deps_collapse(self):
        graph = Graph()
        a = graph.add_empty_node()
        b = graph.add_empty_node(deps=[a, a])
        assert b.deps == (a.id,)
        assert graph.dependencies(b) == (a,)

    def test_fan_in(self):
        graph = Graph()
        a = graph.add_empty_node()
        b = graph.add_empty_node()
        join = graph.add_empty_node(deps=[a, b])
        assert sorted(graph.edges()) == [(a.id, join.id), (b.id, join.id)]

    def test_state_and_destroy(self):
        graph = Graph()
        graph.add_empty_node()
        assert graph.state is GraphState.OPEN
        graph.destroy()
        assert graph.state is GraphState.DESTROYED
        with pytest.raises(GraphError):
            graph.add_empty_node()
        with pytest.raises(GraphError):
            graph.nodes()

    def test_capture_after_end(self):
        capture = CaptureStream()
        capture.end()
        with pytest.raises(GraphError):
            capture.memcpy_d2d(DevSlice(0, 4), DevSlice(4, 4))

    def test_capture_context_manager(self):
        with CaptureStream() as capture:
            capture.memcpy_d2d(DevSlice(0, 4), DevSlice(4, 4))
            capture.memcpy_d2d(DevSlice(8, 4), DevSlice(12, 4))
        assert capture.graph.edges() == [(0, 1)]
