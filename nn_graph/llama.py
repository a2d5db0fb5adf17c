"""LLaMA-family model description.

Tensor names follow the GGUF / llama.cpp convention (``token_embd.weight``,
``blk.{i}.attn_qkv.weight``, ...) with fused QKV and gate/up projections.
The token count is the shape variable ``n``.
"""

from __future__ import annotations

from dataclasses import dataclass

from nn_graph.container import TensorContainer
from nn_graph.dim import Dim
from nn_graph.dtype import DType
from nn_graph.graph import ModelDesc, OpCall, WeightDecl
from nn_graph.ops import AttentionArg, SplitArg
from nn_graph.tensor import TensorMeta


@dataclass(frozen=True)
class LLaMAConfig:
    nvoc: int
    nctx: int
    nblk: int
    d: int
    nh: int
    nkvh: int
    dh: int
    di: int
    epsilon: float = 1e-5
    theta: float = 1e4

    @classmethod
    def from_container(cls, container: TensorContainer, nvoc: int | None = None) -> LLaMAConfig:
        """Read hyper-parameters from ``llama.*`` metadata entries."""
        d = container.get_meta("llama.embedding_length")
        nh = container.get_meta("llama.attention.head_count")
        if nvoc is None:
            nvoc = container.meta("token_embd.weight").concrete_shape()[0]
        return cls(
            nvoc=nvoc,
            nctx=container.get_meta("llama.context_length"),
            nblk=container.get_meta("llama.block_count"),
            d=d,
            nh=nh,
            nkvh=container.get_meta("llama.attention.head_count_kv", nh),
            dh=container.get_meta("llama.rope.dimension_count", d // nh),
            di=container.get_meta("llama.feed_forward_length"),
            epsilon=container.get_meta("llama.attention.layer_norm_rms_epsilon", 1e-5, float),
            theta=container.get_meta("llama.rope.freq_base", 1e4, float),
        )


def llama(config: LLaMAConfig, dtype: DType = DType.F32) -> ModelDesc:
    c = config
    dkv = c.nkvh * c.dh

    def w(name, *shape, dt=dtype):
        return WeightDecl(name, TensorMeta(dt, shape))

    weights = [w("token_embd.weight", c.nvoc, c.d)]
    calls = [OpCall("embd", "embedding", ["token_embd.weight", "tokens"])]
    x = "embd"
    for i in range(c.nblk):
        p = f"blk.{i}"
        weights += [
            w(f"{p}.attn_norm.weight", c.d),
            w(f"{p}.attn_qkv.weight", c.nh * c.dh + 2 * dkv, c.d),
            w(f"{p}.attn_output.weight", c.d, c.nh * c.dh),
            w(f"{p}.ffn_norm.weight", c.d),
            w(f"{p}.ffn_gate_up.weight", 2 * c.di, c.d),
            w(f"{p}.ffn_down.weight", c.d, c.di),
        ]
        calls += [
            OpCall(f"{p}.attn_norm", "rms-norm", [x, f"{p}.attn_norm.weight"], c.epsilon),
            OpCall(f"{p}.qkv", "linear", [f"{p}.attn_norm", f"{p}.attn_qkv.weight"]),
            OpCall(f"{p}.split_qkv", "split", [f"{p}.qkv"], SplitArg(-1, (c.nh, c.nkvh, c.nkvh))),
            OpCall(f"{p}.rope_q", "rope", [f"{p}.split_qkv:0", "pos", "sin_table", "cos_table"]),
            OpCall(f"{p}.rope_k", "rope", [f"{p}.split_qkv:1", "pos", "sin_table", "cos_table"]),
            OpCall(f"{p}.attn", "attention", [f"{p}.rope_q", f"{p}.rope_k", f"{p}.split_qkv:2"],
                   AttentionArg(c.nh, c.nkvh)),
            OpCall(f"{p}.attn_o", "linear", [f"{p}.attn", f"{p}.attn_output.weight"]),
            OpCall(f"{p}.ffn_norm", "rms-norm", [f"{p}.attn_o", f"{p}.ffn_norm.weight"], c.epsilon),
            OpCall(f"{p}.gate_up", "linear", [f"{p}.ffn_norm", f"{p}.ffn_gate_up.weight"]),
            OpCall(f"{p}.split_gate_up", "split", [f"{p}.gate_up"], SplitArg(-1, (1, 1))),
            OpCall(f"{p}.swiglu", "swiglu", [f"{p}.split_gate_up:0", f"{p}.split_gate_up:1"]),
            OpCall(f"{p}.ffn_down", "linear", [f"{p}.swiglu", f"{p}.ffn_down.weight"]),
        ]
        x = f"{p}.ffn_down"
    weights += [
        w("output_norm.weight", c.d),
        w("output.weight", c.nvoc, c.d),
        w("sin_table", c.nctx, c.dh // 2, dt=DType.F32),
        w("cos_table", c.nctx, c.dh // 2, dt=DType.F32),
    ]
    calls += [
        OpCall("output_norm", "rms-norm", [x, "output_norm.weight"], c.epsilon),
        OpCall("output", "linear", ["output_norm", "output.weight"]),
    ]
    return ModelDesc("llama", ["tokens", "pos"], weights, calls)


def llama_inputs() -> list[TensorMeta]:
    """Token ids and positions, both ``U32[n]``."""
    n = Dim.var("n")
    return [TensorMeta(DType.U32, [n]), TensorMeta(DType.U32, [n])]
