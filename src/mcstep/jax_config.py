"""
JAX Configuration - MUST be imported before any JAX imports.

This module sets environment variables for JAX configuration including:
- Double precision for trace diagnostics
- Persistent compilation cache directory for the diagnostic kernels
- Minimum compile time threshold for caching
"""
import os
from pathlib import Path

# --- PRECISION ---
# Traces are recorded in float64 on the host; keep the diagnostics in float64 too
os.environ.setdefault("JAX_ENABLE_X64", "True")

# Suppress XLA C++ warnings on CPU-only hosts
os.environ.setdefault("TF_CPP_MIN_LOG_LEVEL", "2")

# --- PERSISTENT COMPILATION CACHE ---
_JAX_CACHE_DIR = Path.home() / ".cache" / "jax" / "mcstep_cache"
os.environ.setdefault("JAX_COMPILATION_CACHE_DIR", str(_JAX_CACHE_DIR))
os.environ.setdefault("JAX_PERSISTENT_CACHE_MIN_COMPILE_TIME_SECS", "1.0")
