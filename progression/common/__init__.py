"""
Shared infrastructure for the progression engine: logging, configuration,
errors, clocks, serialization, partitioned state and caching.
"""
