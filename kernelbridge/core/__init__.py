"""
Core utilities for kernelbridge: configuration, cancellation, interceptors
and the host-facing async executor.
"""
