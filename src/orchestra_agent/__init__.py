"""Orchestra agent: workspace provisioning and AI CLI execution for remote workers."""

__version__ = "0.1.0"

__all__ = ["__version__"]
