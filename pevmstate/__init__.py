"""Chain state storage back ends and a collaborative scheduler for parallel EVM block execution."""

__version__ = "0.1.0"
__all__ = ["storage", "in_memory", "scheduler", "rpc"]