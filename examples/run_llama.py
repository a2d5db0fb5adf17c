"""Build a LLaMA graph from a safetensors checkpoint and stream its weights to the GPU.

The checkpoint must carry ``llama.*`` metadata entries and GGUF-style tensor
names (``token_embd.weight``, ``blk.{i}.attn_qkv.weight``, ...). Without a CUDA
device the script stops after planning the weight buffer.

Usage:
    python examples/run_llama.py model.safetensors --n 5
"""

from __future__ import annotations

import argparse
import logging
import time

import gpu_runtime
from nn_graph import TensorContainer, bind_edges, default_builder, plan_weights
from nn_graph.binding import insert_sin_cos
from nn_graph.llama import LLaMAConfig, llama, llama_inputs


def main():
    parser = argparse.ArgumentParser(description="Build a LLaMA graph and load its weights")
    parser.add_argument("path", help="safetensors checkpoint")
    parser.add_argument("--n", type=int, default=5, help="Token count to bind")
    parser.add_argument("--align", type=int, default=512, help="Weight buffer alignment")
    parser.add_argument("--verbose", action="store_true", help="Print every graph node")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(name)s %(levelname)s %(message)s")

    print("=" * 60)
    print(f"LLaMA graph from {args.path}")
    print("=" * 60)

    # 1. Read checkpoint and config
    t0 = time.time()
    container = TensorContainer.open(args.path)
    config = LLaMAConfig.from_container(container)
    insert_sin_cos(container, config.nctx, config.dh, config.theta)
    print(f"  Open time: {time.time() - t0:.2f}s")
    print(f"  Config: {config}")

    # 2. Build the abstract graph
    graph = default_builder().build(llama(config), llama_inputs())
    print(f"\nGraph: {len(graph.nodes)} nodes, {len(graph.edges)} edges")
    if args.verbose:
        print(graph.summary())

    # 3. Fix n and bind weights
    tensors = bind_edges(graph.edges, container, {"n": args.n})
    plan = plan_weights(tensors, args.align)
    print(f"\nWeight buffer: {plan.size / 1e6:.1f} MB, {len(plan.ranges)} distinct tensors")

    # 4. Load onto the device
    if not gpu_runtime.available():
        print("\nNo CUDA runtime available; skipping device load.")
        return
    ctx = gpu_runtime.Context(0)
    stream = ctx.stream()
    t0 = time.time()
    memory, loaded = gpu_runtime.load_weights(ctx, tensors, plan, stream, block_count=config.nblk)
    ctx.synchronize()
    print(f"\nLoaded {memory.nbytes / 1e6:.1f} MB in {time.time() - t0:.2f}s")
    print(f"  Tensors: {len(loaded)}")


if __name__ == "__main__":
    main()
