"""Abstract network graph: shape algebra, operator registry, graph build and weight planning.

Host-only; nothing here touches a GPU.
"""

from nn_graph.binding import bind_edges as bind_edges
from nn_graph.buffer_planner import MemCalculator as MemCalculator
from nn_graph.buffer_planner import WeightPlan as WeightPlan
from nn_graph.buffer_planner import plan_weights as plan_weights
from nn_graph.container import TensorContainer as TensorContainer
from nn_graph.dim import Dim as Dim
from nn_graph.dtype import DType as DType
from nn_graph.errors import DTypeMismatch as DTypeMismatch
from nn_graph.errors import GraphBuildError as GraphBuildError
from nn_graph.errors import OperatorUnknown as OperatorUnknown
from nn_graph.errors import PlannerAliasLenMismatch as PlannerAliasLenMismatch
from nn_graph.errors import ShapeInferenceError as ShapeInferenceError
from nn_graph.errors import ShapeMismatch as ShapeMismatch
from nn_graph.graph import Graph as Graph
from nn_graph.graph import GraphBuilder as GraphBuilder
from nn_graph.graph import ModelDesc as ModelDesc
from nn_graph.graph import OpCall as OpCall
from nn_graph.graph import default_builder as default_builder
from nn_graph.graph import load_model_from_dict as load_model_from_dict
from nn_graph.tensor import Edge as Edge
from nn_graph.tensor import External as External
from nn_graph.tensor import Tensor as Tensor
from nn_graph.tensor import TensorMeta as TensorMeta
from nn_graph.llama import LLaMAConfig as LLaMAConfig
from nn_graph.llama import llama as llama
from nn_graph.llama import llama_inputs as llama_inputs
