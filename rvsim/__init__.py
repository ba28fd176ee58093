"""RV64IM simulator with an interactive debugger, performance models and cache simulators."""

__version__ = "0.1.0"