"""
glaunch
=======

Launch a computational process on the GPUs that have room for it.

What it does:
  1. Read free memory on every local GPU via NVML (pynvml, or nvidia-smi)
  2. Pick the requested number of GPUs with more free memory than the
     program's budget, WorstFit or BestFit
  3. Optionally wait, polling, until enough GPUs qualify
  4. Run the program with CUDA_VISIBLE_DEVICES set to the chosen GPUs
  5. Optionally time it, tee its output to a file, and report its GPU
     memory usage periodically

Admission is advisory: nothing is reserved, so two launches can race for
the same free memory.

Requirements:
  pip install nvidia-ml-py psutil

Usage:
  glaunch --gpus 2 --memory-budget 20GiB --wait-timeout 2h -- python train.py
  gps        # who is computing on which GPU
"""

__version__ = "0.1.0"
