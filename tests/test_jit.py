"""Tests for the host side of JIT support: symbol search, options, kernel arguments."""

import ctypes

import numpy as np
import pytest

from gpu_runtime.errors import InvalidLaunchConfig
from gpu_runtime.jit import CompileOptions, KernelParams, LaunchConfig, Symbol, SymbolKind, dim3
from gpu_runtime.memory import DevSlice

# ---------------------------------------------------------------------------
# 1. Symbol.search
# ---------------------------------------------------------------------------


class TestSymbolSearch:
    def test_three_declarations(self):
        code = """
extern "C" __global__ void kernel0(float* a) {}
extern "C" __device__ long kernel1(int b) { return b; }
extern "C" __global__ void kernel2(float* c, int n) {}
"""
        assert Symbol.search(code) == [
            Symbol.global_("kernel0"),
            Symbol.device("kernel1"),
            Symbol.global_("kernel2"),
        ]

    def test_without_extern_c_is_ignored(self):
        code = """
__global__ void hidden(float* a) {}
extern __device__ int other(int x);
extern "C" __global__ void visible(float* a) {}
"""
        assert Symbol.search(code) == [Symbol(SymbolKind.GLOBAL, "visible")]

    def test_extern_block(self):
        code = """
#include <cuda_fp16.h>
extern "C" {
__global__ void fused_relu(const __half* in0, __half* out0, int N) {
    int idx = blockIdx.x * blockDim.x + threadIdx.x;
}
}
"""
        assert Symbol.search(code) == [Symbol.global_("fused_relu")]

    def test_pointer_return(self):
        code = 'extern "C" __device__ float *lookup(float* table, int i) { return table + i; }'
        assert Symbol.search(code) == [Symbol.device("lookup")]

    def test_host_function_ignored(self):
        assert Symbol.search('extern "C" int host_only(int x) { return x; }') == []

    def test_empty(self):
        assert Symbol.search("") == []


# ---------------------------------------------------------------------------
# 2. CompileOptions
# ---------------------------------------------------------------------------


class TestCompileOptions:
    def test_default_is_empty(self):
        assert CompileOptions().to_nvrtc_args() == []

    def test_all_flags(self):
        opts = CompileOptions(
            include_paths=("/opt/include", "/usr/local/cuda/include"),
            extra_flags=("-std=c++17",),
            no_host_device_constexpr=True,
            disable_version_check=True,
            arch="compute_80",
        )
        assert opts.to_nvrtc_args() == [
            b"--gpu-architecture=compute_80",
            b"--include-path=/opt/include",
            b"--include-path=/usr/local/cuda/include",
            b"-Xclang",
            b"-fno-cuda-host-device-constexpr",
            b"--no-cuda-version-check",
            b"-std=c++17",
        ]

    def test_from_env(self, monkeypatch, tmp_path):
        cuda_home = tmp_path / "cuda"
        (cuda_home / "include").mkdir(parents=True)
        monkeypatch.setenv("CUDA_HOME", str(cuda_home))
        monkeypatch.setenv("NN_GRAPH_INCLUDE_PATH", "/a:/b")
        opts = CompileOptions.from_env()
        assert opts.include_paths == (str(cuda_home / "include"), "/a", "/b")

    def test_from_env_missing_cuda_home(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CUDA_HOME", str(tmp_path / "nowhere"))
        monkeypatch.delenv("NN_GRAPH_INCLUDE_PATH", raising=False)
        assert CompileOptions.from_env().include_paths == ()

    def test_with_arch(self):
        opts = CompileOptions().with_arch("compute_90")
        assert opts.arch == "compute_90"
        assert CompileOptions().arch is None


# ---------------------------------------------------------------------------
# 3. KernelParams
# ---------------------------------------------------------------------------


class TestKernelParams:
    def test_marshaling(self):
        params = KernelParams(DevSlice(0x1000, 64), np.int32(7), np.float16(1.5), 3, 2.0, ctypes.c_uint8(9))
        raw = params.raw()
        assert raw[0] == (0x1000).to_bytes(8, "little")
        assert raw[1] == np.int32(7).tobytes()
        assert raw[2] == np.float16(1.5).tobytes()
        assert raw[3] == np.int64(3).tobytes()
        assert raw[4] == np.float64(2.0).tobytes()
        assert raw[5] == b"\x09"

    def test_ptrs_point_at_storage(self):
        params = KernelParams(np.int32(42), np.float32(0.5))
        ptrs = params.ptrs()
        array = (ctypes.c_void_p * 2).from_address(ptrs.address)
        assert ctypes.c_int32.from_address(array[0]).value == 42
        assert ctypes.c_float.from_address(array[1]).value == 0.5

    def test_empty_has_null_address(self):
        assert KernelParams().ptrs().address == 0

    def test_push_is_chainable(self):
        params = KernelParams().push(np.uint32(1)).push(np.uint32(2))
        assert len(params) == 2

    def test_equality_by_bytes(self):
        assert KernelParams(np.int32(1), DevSlice(16, 4)) == KernelParams(np.int32(1), DevSlice(16, 8))
        assert KernelParams(np.int32(1)) != KernelParams(np.int64(1))

    def test_unsupported(self):
        with pytest.raises(TypeError):
            KernelParams("not an argument")

    def test_of(self):
        params = KernelParams(np.int32(1))
        assert KernelParams.of(params) is params
        assert len(KernelParams.of(None)) == 0
        assert len(KernelParams.of([np.int32(1), np.int32(2)])) == 2


# ---------------------------------------------------------------------------
# 4. Launch configuration
# ---------------------------------------------------------------------------


class TestLaunchConfig:
    def test_padding(self):
        assert dim3(128, "grid") == (128, 1, 1)
        assert dim3((4, 2), "block") == (4, 2, 1)
        assert dim3((1, 2, 3), "block") == (1, 2, 3)

    @pytest.mark.parametrize("bad", [0, -1, (1, 0), (1, 1, 1, 1), (), (2.0,), (True,)])
    def test_invalid(self, bad):
        with pytest.raises(InvalidLaunchConfig):
            dim3(bad, "grid")

    def test_negative_shared(self):
        with pytest.raises(InvalidLaunchConfig):
            LaunchConfig.of(1, 1, -4)

    def test_invalid_is_value_error(self):
        with pytest.raises(ValueError):
            LaunchConfig.of(0, 1)
