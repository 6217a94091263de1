"""
Hardware abstraction for the accelerated inference backend.

The packed-weight CPU engine never leaves the CPU. The accelerated engine
(engine.DeviceEngine) decodes every ternary layer to dense floats ONCE and
runs on the best device available. This module is the only place that
knows how to find that device and how to ask it about memory.

SUPPORTED DEVICES:
  1. CUDA (NVIDIA GPUs)
  2. MPS (Apple Silicon)
  3. CPU: always available; the accelerated engine still benefits from
     skipping the per-call unpacking
"""

from typing import Optional

import torch


def get_device(preferred: Optional[str] = None) -> torch.device:
    """
    Pick the compute device.

    Priority order: CUDA → MPS → CPU, unless a device is named explicitly.

    Args:
        preferred: "cuda", "mps", "cpu", or None for auto-detection.

    Returns:
        torch.device: The selected device.

    Raises:
        ValueError: if the preferred device is not available.
    """
    if preferred is not None:
        if preferred == "cuda" and not torch.cuda.is_available():
            raise ValueError("CUDA was requested but is not available")
        if preferred == "mps" and not (hasattr(torch.backends, "mps") and torch.backends.mps.is_available()):
            raise ValueError("MPS was requested but is not available")
        return torch.device(preferred)

    if torch.cuda.is_available():
        return torch.device("cuda")
    elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
        return torch.device("mps")
    else:
        return torch.device("cpu")


def device_info(device: torch.device) -> str:
    """
    Human-readable description of a device, printed once at engine start.
    """
    lines = [f"Device: {device}"]

    if device.type == "cuda":
        props = torch.cuda.get_device_properties(device)
        lines.append(f"  GPU: {props.name}")
        lines.append(f"  VRAM: {props.total_memory / 1024**3:.1f} GB")
        lines.append(f"  Compute Capability: {props.major}.{props.minor}")
        lines.append(f"  CUDA Version: {torch.version.cuda}")
    elif device.type == "mps":
        lines.append("  Backend: Metal Performance Shaders (Apple Silicon)")
        try:
            allocated = torch.mps.driver_allocated_memory() / 1024**3
            lines.append(f"  GPU Memory Allocated: {allocated:.2f} GB")
        except AttributeError:
            lines.append("  GPU Memory: (info not available)")
    else:
        lines.append("  Backend: CPU (no GPU acceleration)")

    lines.append(f"  PyTorch Version: {torch.__version__}")

    return "\n".join(lines)


def get_memory_usage(device: torch.device) -> dict:
    """
    Current device memory in MB: {'allocated_mb', 'reserved_mb'}.

    Both are 0.0 on CPU, where PyTorch has no allocator statistics.
    """
    if device.type == "cuda":
        return {
            "allocated_mb": torch.cuda.memory_allocated(device) / 1024**2,
            "reserved_mb": torch.cuda.memory_reserved(device) / 1024**2,
        }
    elif device.type == "mps":
        try:
            return {
                "allocated_mb": torch.mps.current_allocated_memory() / 1024**2,
                "reserved_mb": torch.mps.driver_allocated_memory() / 1024**2,
            }
        except AttributeError:
            return {"allocated_mb": 0.0, "reserved_mb": 0.0}
    else:
        return {"allocated_mb": 0.0, "reserved_mb": 0.0}
