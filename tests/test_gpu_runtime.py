"""Integration tests for the device runtime: memory, JIT, graphs, weight loading.

These tests REQUIRE a CUDA device with CuPy and cuda-python installed.
Skipped automatically otherwise.
"""

import numpy as np
import numpy.testing as npt
import pytest

from gpu_runtime import NoDevice, init

try:
    init()
    HAS_DEVICE = True
except (NoDevice, RuntimeError):
    HAS_DEVICE = False

pytestmark = pytest.mark.skipif(not HAS_DEVICE, reason="CUDA device not available")

from conftest import tiny_inputs, tiny_llama, tiny_weights  # noqa: E402
from gpu_runtime import (  # noqa: E402
    DriverError,
    Graph,
    JitCompileError,
    MappingError,
    OutOfMemory,
    SymbolNotFound,
    VirMem,
    WeightLoader,
    load_weights,
    memcpy_d2h,
    memcpy_h2d,
)
from gpu_runtime._driver import driver  # noqa: E402
from gpu_runtime.graph import InstantiatedState  # noqa: E402
from nn_graph import TensorContainer, bind_edges, default_builder, plan_weights  # noqa: E402
from nn_graph.tensor import DeviceRange  # noqa: E402

SCALE_SRC = """
extern "C" __global__ void scale(float* out, const float* in, float k, int n) {
    int i = blockIdx.x * blockDim.x + threadIdx.x;
    if (i < n) out[i] = in[i] * k;
}

extern "C" __device__ float twice(float x) { return 2.0f * x; }
"""


def _upload(ctx, host):
    mem = ctx.malloc(host.nbytes)
    with ctx:
        memcpy_h2d(mem, host)
    return mem


def _download(ctx, mem, dtype, count):
    host = np.empty(count, dtype=dtype)
    with ctx:
        memcpy_d2h(host, mem)
    return host


# ---------------------------------------------------------------------------
# 1. Context
# ---------------------------------------------------------------------------


class TestContext:
    def test_device_info(self, ctx):
        assert ctx.device.name
        major, minor = ctx.device.compute_capability
        assert major >= 3

    def test_apply_returns_value(self, ctx):
        assert ctx.apply(lambda c: c is ctx) is True

    def test_apply_pops_on_failure(self, ctx):
        before = driver.cuCtxGetCurrent()[1]

        def boom(c):
            raise RuntimeError("inside")

        with pytest.raises(RuntimeError, match="inside"):
            ctx.apply(boom)
        assert int(driver.cuCtxGetCurrent()[1]) == int(before)

    def test_event_ordering(self, ctx, stream):
        event = stream.record()
        event.synchronize()
        assert event.done


# ---------------------------------------------------------------------------
# 2. Memory
# ---------------------------------------------------------------------------


class TestMemory:
    def test_h2d_d2h_roundtrip(self, ctx, rng):
        data = rng.standard_normal(256).astype(np.float32)
        mem = _upload(ctx, data)
        npt.assert_array_equal(_download(ctx, mem, np.float32, 256), data)

    def test_slice_copy(self, ctx, stream, rng):
        data = rng.integers(0, 255, size=1024, dtype=np.uint8)
        src = _upload(ctx, data)
        dst = ctx.malloc(512)
        stream.memcpy_d2d(dst, src[256:768])
        stream.synchronize()
        npt.assert_array_equal(_download(ctx, dst, np.uint8, 512), data[256:768])

    def test_async_roundtrip(self, ctx, stream, rng):
        data = rng.standard_normal(64).astype(np.float32)
        out = np.empty_like(data)
        mem = ctx.malloc(data.nbytes)
        stream.memcpy_h2d_async(mem, data)
        stream.memcpy_d2h_async(out, mem)
        stream.synchronize()
        npt.assert_array_equal(out, data)

    def test_size_mismatch(self, ctx):
        mem = ctx.malloc(16)
        with pytest.raises(ValueError):
            with ctx:
                memcpy_h2d(mem, np.zeros(8, dtype=np.uint8))

    def test_double_map_rejected(self, ctx):
        with ctx:
            prop = ctx.device.mem_prop()
            g = prop.granularity_minimum()
            vm = VirMem(2 * g, prop=prop)
            vm.map(0, prop.create(g))
            with pytest.raises(MappingError):
                vm.map(0, prop.create(g))
            with pytest.raises(MappingError):
                vm.unmap(g)
            assert vm.is_mapped(0, g)
            assert not vm.is_mapped(0, 2 * g)
            vm.release()

    def test_unaligned_map_rejected(self, ctx):
        with ctx:
            prop = ctx.device.mem_prop()
            g = prop.granularity_minimum()
            vm = VirMem(2 * g, prop=prop)
            with pytest.raises(MappingError):
                vm.map(1, prop.create(g))
            vm.release()

    def test_unmap_remap_same_block(self, ctx, rng):
        with ctx:
            prop = ctx.device.mem_prop()
            g = prop.granularity_minimum()
            data = rng.integers(0, 255, size=g, dtype=np.uint8)
            vm = VirMem(2 * g, prop=prop)
            block = prop.create(g)
            memcpy_h2d(vm.map(g, block), data)

            assert vm.unmap(g) is block
            assert not vm.is_mapped(g, g)
            view = vm.map(g, block)
            assert view.ptr == vm.ptr + g
            npt.assert_array_equal(_download(ctx, view, np.uint8, g), data)
            vm.release()

    def test_malloc_out_of_memory(self, ctx):
        with pytest.raises(OutOfMemory) as e:
            ctx.malloc(1 << 50)
        assert e.value.code == int(driver.CUresult.CUDA_ERROR_OUT_OF_MEMORY)


# ---------------------------------------------------------------------------
# 3. JIT
# ---------------------------------------------------------------------------


class TestJit:
    def test_module_symbols(self, ctx):
        module = ctx.load_module(SCALE_SRC)
        assert sorted(module.functions) == ["scale"]
        assert [s.name for s in module.symbols] == ["scale", "twice"]

    def test_module_cache(self, ctx):
        assert ctx.load_module(SCALE_SRC) is ctx.load_module(SCALE_SRC)

    def test_symbol_not_found(self, ctx):
        module = ctx.load_module(SCALE_SRC)
        with pytest.raises(SymbolNotFound):
            module.get_function("twice")
        with pytest.raises(KeyError):
            module["missing"]

    def test_compile_error_has_log(self, ctx):
        with pytest.raises(JitCompileError) as e:
            ctx.load_module('extern "C" __global__ void broken(int* a) { a[0] = undefined_name; }')
        assert "undefined_name" in e.value.log

    def test_launch(self, ctx, stream, rng):
        n = 1000
        data = rng.standard_normal(n).astype(np.float32)
        src = _upload(ctx, data)
        dst = ctx.malloc(data.nbytes)
        kernel = ctx.load_module(SCALE_SRC)["scale"]
        stream.launch(kernel, (n + 255) // 256, 256, 0, [dst, src, np.float32(3.0), np.int32(n)])
        stream.synchronize()
        npt.assert_allclose(_download(ctx, dst, np.float32, n), data * 3.0, rtol=1e-6)

    def test_launch_too_many_threads(self, ctx, stream):
        kernel = ctx.load_module(SCALE_SRC)["scale"]
        mem = ctx.malloc(4)
        with pytest.raises(DriverError):
            stream.launch(kernel, 1, 4096, 0, [mem, mem, np.float32(1.0), np.int32(1)])


# ---------------------------------------------------------------------------
# 4. Device graphs
# ---------------------------------------------------------------------------


class TestDeviceGraph:
    def test_capture_d2d(self, ctx, stream):
        dst, src = ctx.malloc(1024), ctx.malloc(1024)
        capture = stream.capture()
        capture.memcpy_d2d(dst, src)
        graph = capture.end()
        (node,) = graph.nodes()
        assert node.params.width_in_bytes == 1024

    def test_explicit_d2d(self, ctx, stream, rng):
        data = rng.integers(0, 255, size=2048, dtype=np.uint8)
        src = _upload(ctx, data)
        dst = ctx.malloc(2048)
        graph = Graph()
        graph.add_memcpy_d2d(dst, src)
        exe = ctx.instantiate(graph)
        stream.launch_graph(exe)
        stream.synchronize()
        npt.assert_array_equal(_download(ctx, dst, np.uint8, 2048), data)
        assert exe.state is InstantiatedState.LAUNCHED
        exe.destroy()

    def test_capture_and_explicit_give_same_state(self, ctx, stream, rng):
        n = 512
        data = rng.standard_normal(n).astype(np.float32)
        kernel = ctx.load_module(SCALE_SRC)["scale"]
        results = []
        for mode in ("explicit", "capture"):
            src, tmp, dst = ctx.malloc(n * 4), ctx.malloc(n * 4), ctx.malloc(n * 4)
            args = [tmp, src, np.float32(0.5), np.int32(n)]
            if mode == "explicit":
                graph = Graph()
                a = graph.add_memcpy_h2d(src, data)
                b = graph.add_kernel_node(kernel, 2, 256, 0, args, deps=[a])
                graph.add_memcpy_d2d(dst, tmp, deps=[b])
            else:
                capture = stream.capture()
                capture.memcpy_h2d(src, data)
                capture.launch(kernel, 2, 256, 0, args)
                capture.memcpy_d2d(dst, tmp)
                graph = capture.end()
            with ctx.instantiate(graph) as exe:
                stream.launch_graph(exe)
                stream.synchronize()
            results.append(_download(ctx, dst, np.float32, n))
        assert results[0].tobytes() == results[1].tobytes()
        npt.assert_allclose(results[0], data * 0.5)

    def test_instantiations_are_independent(self, ctx, stream, rng):
        a_data = rng.integers(0, 255, size=256, dtype=np.uint8)
        b_data = rng.integers(0, 255, size=256, dtype=np.uint8)
        a, b, dst = _upload(ctx, a_data), _upload(ctx, b_data), ctx.malloc(256)
        graph = Graph()
        graph.add_memcpy_d2d(dst, a)
        first = ctx.instantiate(graph)
        graph.add_memcpy_d2d(dst, b, deps=graph.nodes())
        second = ctx.instantiate(graph)

        stream.launch_graph(first)
        stream.synchronize()
        npt.assert_array_equal(_download(ctx, dst, np.uint8, 256), a_data)
        stream.launch_graph(second)
        stream.synchronize()
        npt.assert_array_equal(_download(ctx, dst, np.uint8, 256), b_data)
        assert (first.node_count, second.node_count) == (1, 2)
        first.destroy()
        second.destroy()

    def test_zero_byte_node_instantiates(self, ctx, stream):
        empty = ctx.malloc(16)
        graph = Graph()
        graph.add_memcpy_d2d(empty[0:0], empty[8:8])
        with ctx.instantiate(graph) as exe:
            stream.launch_graph(exe)
            stream.synchronize()

    def test_survives_graph_destroy(self, ctx, stream, rng):
        data = rng.integers(0, 255, size=64, dtype=np.uint8)
        dst = ctx.malloc(64)
        graph = Graph()
        graph.add_memcpy_h2d(dst, data.copy())
        exe = ctx.instantiate(graph)
        graph.destroy()
        stream.launch_graph(exe)
        stream.synchronize()
        npt.assert_array_equal(_download(ctx, dst, np.uint8, 64), data)
        exe.destroy()

    def test_remap_between_launches(self, ctx, stream, rng):
        with ctx:
            prop = ctx.device.mem_prop()
            g = prop.granularity_minimum()
            forward = rng.integers(0, 255, size=g, dtype=np.uint8)
            reverse = forward[::-1].copy()

            first, second = prop.create(g), prop.create(g)
            staging = VirMem(g, prop=prop)
            memcpy_h2d(staging.map(0, second), reverse)
            staging.unmap(0)
            staging.release()

            vm = VirMem(g, prop=prop)
            view = vm.map(0, first)
            memcpy_h2d(view, forward)
            dst = ctx.malloc(g)

            graph = Graph()
            graph.add_memcpy_d2d(dst, view)
            exe = ctx.instantiate(graph)

        stream.launch_graph(exe)
        stream.synchronize()
        npt.assert_array_equal(_download(ctx, dst, np.uint8, g), forward)

        with ctx:
            assert vm.unmap(0) is first
            vm.map(0, second)
        stream.launch_graph(exe)
        stream.synchronize()
        npt.assert_array_equal(_download(ctx, dst, np.uint8, g), reverse)

        exe.destroy()
        with ctx:
            vm.release()

    def test_replay_after_same_block_remap(self, ctx, stream, rng):
        with ctx:
            prop = ctx.device.mem_prop()
            g = prop.granularity_minimum()
            data = rng.integers(0, 255, size=g, dtype=np.uint8)
            block = prop.create(g)
            vm = VirMem(g, prop=prop)
            view = vm.map(0, block)
            memcpy_h2d(view, data)
            dst = ctx.malloc(g)

            graph = Graph()
            graph.add_memcpy_d2d(dst, view)
            exe = ctx.instantiate(graph)

        stream.launch_graph(exe)
        stream.synchronize()
        first = _download(ctx, dst, np.uint8, g)

        with ctx:
            vm.unmap(0)
            vm.map(0, block)
            memcpy_h2d(dst, np.zeros(g, dtype=np.uint8))
        stream.launch_graph(exe)
        stream.synchronize()
        npt.assert_array_equal(_download(ctx, dst, np.uint8, g), first)
        npt.assert_array_equal(first, data)

        exe.destroy()
        with ctx:
            vm.release()


# ---------------------------------------------------------------------------
# 5. Weight loading
# ---------------------------------------------------------------------------


class TestWeightLoader:
    def test_packed_buffer_matches_sources(self, ctx, stream, rng):
        model = tiny_llama(nblk=2)
        graph = default_builder().build(model, tiny_inputs())
        container = TensorContainer(tiny_weights(model, rng))
        tensors = bind_edges(graph.substitute({"n": 4}), container, {})
        plan = plan_weights(tensors)

        memory, placed = load_weights(ctx, tensors, plan, stream, block_count=2)
        packed = _download(ctx, memory, np.uint8, plan.size)
        for before, after in zip(tensors, placed):
            if not before.is_weight:
                assert after is before
                continue
            assert isinstance(after.storage, DeviceRange)
            r = after.storage.as_range()
            assert packed[r.start:r.stop].tobytes() == before.storage.as_bytes().tobytes()

    def test_pool_reuse_and_growth(self, ctx, stream, rng):
        loader = WeightLoader([64])
        dst = ctx.malloc(64 * 4 + 100)
        sources = [rng.integers(0, 255, size=64, dtype=np.uint8) for _ in range(4)]
        for i, src in enumerate(sources):
            loader.load(dst[i * 64:(i + 1) * 64], src, stream)
        assert loader.capacity == [64]
        big = rng.integers(0, 255, size=100, dtype=np.uint8)
        loader.load(dst[256:356], big, stream)
        assert loader.capacity == [64, 100]
        loader.synchronize()
        out = _download(ctx, dst, np.uint8, 356)
        npt.assert_array_equal(out[:256], np.concatenate(sources))
        npt.assert_array_equal(out[256:], big)
        assert loader.staged_bytes == 356
        loader.release()

    def test_oversized_source(self, ctx, stream):
        loader = WeightLoader([16])
        with pytest.raises(ValueError):
            loader.load(ctx.malloc(8), np.zeros(16, dtype=np.uint8), stream)
