"""
Example demonstrating two worker threads sharing one Caller.

Each ChunkWorker owns a ModelRunner; both submit batches to the same Caller,
which executes them one at a time on its device. Chunks come back tagged with
the read they were cut from.
"""

import queue

import torch

from basecall_lite import Caller, ChunkWorker, ModelConfig, ModelRunner, SignalChunk
from basecall_lite.models.tx import ConvParams
from basecall_lite.utils import setup_logging

setup_logging("INFO")

# A small model so the example runs quickly on CPU
config = ModelConfig(
    convs=(
        ConvParams(insize=1, size=16, winlen=5, stride=1),
        ConvParams(insize=16, size=64, winlen=9, stride=3),
        ConvParams(insize=64, size=128, winlen=9, stride=2),
        ConvParams(insize=128, size=128, winlen=5, stride=2),
    ),
    d_model=128,
    nhead=4,
    depth=4,
    dim_feedforward=256,
    state_len=3,
    chunk_size=2400,
    batch_size=8,
    batch_granularity=8,
    max_batch_size=64,
    name="tx-small",
)

print("Initializing Caller...")
caller = Caller(config, device="cpu", memory_limit_fraction=0.25)
print(f"  {caller}")

inputs: "queue.Queue[SignalChunk]" = queue.Queue()
outputs = queue.Queue()
workers = [ChunkWorker(ModelRunner(caller), inputs, outputs) for _ in range(2)]
for worker in workers:
    worker.start()

# Cut three synthetic reads into chunks
print("\nSubmitting chunks...")
num_chunks = 0
for read_index, length in enumerate([9600, 4800, 12000]):
    signal = torch.randn(length)
    for chunk_index, start in enumerate(range(0, length, config.chunk_size)):
        chunk = signal[start : start + config.chunk_size]
        if chunk.numel() < config.chunk_size:
            chunk = torch.nn.functional.pad(chunk, (0, config.chunk_size - chunk.numel()))
        inputs.put(SignalChunk(f"read_{read_index}", chunk_index, chunk.unsqueeze(0)))
        num_chunks += 1
print(f"  Submitted {num_chunks} chunks")

for worker in workers:
    worker.stop()

print("\nCalled chunks:")
while not outputs.empty():
    called = outputs.get()
    print(f"  {called.read_id}[{called.chunk_index}]: {len(called.decoded)} bases")

print("\nCaller stats:")
stats = caller.sample_stats()
print(f"  Batches: {stats['batches']:.0f}")
print(f"  Chunks: {stats['chunks']:.0f}")
print(f"  Model time: {stats['model_ms']:.1f} ms")
print(f"  Memory utilization: {stats['memory_utilization']:.2%}")

caller.close()
