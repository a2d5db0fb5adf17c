"""Device runtime: contexts, memory, JIT modules, device graphs and weight loading.

Requires CuPy and cuda-python; importing the package without them works, but
``init()`` raises NoDevice.
"""

from gpu_runtime._driver import HAS_CUDA_PYTHON as HAS_CUDA_PYTHON
from gpu_runtime._driver import HAS_CUPY as HAS_CUPY
from gpu_runtime._driver import available as available
from gpu_runtime.collective import CollectiveCall as CollectiveCall
from gpu_runtime.collective import Communicator as Communicator
from gpu_runtime.collective import ReduceOp as ReduceOp
from gpu_runtime.context import Context as Context
from gpu_runtime.context import Device as Device
from gpu_runtime.context import Event as Event
from gpu_runtime.context import Stream as Stream
from gpu_runtime.context import device_count as device_count
from gpu_runtime.context import init as init
from gpu_runtime.errors import DriverError as DriverError
from gpu_runtime.errors import GpuError as GpuError
from gpu_runtime.errors import GraphError as GraphError
from gpu_runtime.errors import InvalidLaunchConfig as InvalidLaunchConfig
from gpu_runtime.errors import JitCompileError as JitCompileError
from gpu_runtime.errors import MappingError as MappingError
from gpu_runtime.errors import NoDevice as NoDevice
from gpu_runtime.errors import OutOfMemory as OutOfMemory
from gpu_runtime.errors import SymbolNotFound as SymbolNotFound
from gpu_runtime.graph import CaptureStream as CaptureStream
from gpu_runtime.graph import Graph as Graph
from gpu_runtime.graph import GraphNode as GraphNode
from gpu_runtime.graph import InstantiatedGraph as InstantiatedGraph
from gpu_runtime.graph import Memcpy3D as Memcpy3D
from gpu_runtime.graph import MemoryKind as MemoryKind
from gpu_runtime.jit import CompileOptions as CompileOptions
from gpu_runtime.jit import KernelFn as KernelFn
from gpu_runtime.jit import KernelParams as KernelParams
from gpu_runtime.jit import Module as Module
from gpu_runtime.jit import Symbol as Symbol
from gpu_runtime.jit import SymbolKind as SymbolKind
from gpu_runtime.memory import DevMem as DevMem
from gpu_runtime.memory import DevSlice as DevSlice
from gpu_runtime.memory import MemProp as MemProp
from gpu_runtime.memory import PhysMem as PhysMem
from gpu_runtime.memory import VirMem as VirMem
from gpu_runtime.memory import memcpy_d2d as memcpy_d2d
from gpu_runtime.memory import memcpy_d2h as memcpy_d2h
from gpu_runtime.memory import memcpy_h2d as memcpy_h2d
from gpu_runtime.weight_loader import WeightLoader as WeightLoader
from gpu_runtime.weight_loader import load_weights as load_weights
