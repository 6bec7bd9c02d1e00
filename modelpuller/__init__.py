"""Pull model files from storage and coordinate model loading with a serving runtime."""

__version__ = "0.1.0"
__all__ = ["config", "dotpath", "messages", "puller", "modelstate", "server"]